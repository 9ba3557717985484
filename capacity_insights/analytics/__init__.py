"""
Capacity Insights
Analytics domain — pure calculations, no database access.

Submodules:
    - types: Status / trend enums and result dataclasses
    - trend: Burn-rate, trend and completion forecast from snapshot history
    - classifier: First-match status rules with tunable thresholds
    - aggregator: Phase → project → tenant roll-ups
"""
