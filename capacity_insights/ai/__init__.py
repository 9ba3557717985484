"""
Capacity Insights
AI module.

Submodules:
    - gateway: LLM Gateway (provider routing, retry)
    - prompt_registry: Prompt templates (built-in + YAML overrides)
    - text_generator: Insight texts with LLM primary path and template fallback
"""
