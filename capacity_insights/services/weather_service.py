"""
Weather Context Provider — Open-Meteo forecast for construction sites.

Outbound HTTP goes through ``OpenMeteoClient`` only. Pass a custom
``requests.Session`` in tests to intercept calls.

  - Timeout: WEATHER_TIMEOUT (default 5 s), single attempt, no retry
  - Cache: ``weather_cache`` table, keyed by coordinates rounded to 0.01°
    and forecast date; rows fetched today are reused
  - Failures return None ("no weather context"), never raise
  - refresh_weather_cache: daily warm-up for all project locations, rows
    older than 7 days are purged (job ``weather_refresh``, /api/cron/weather)

Construction rating per day:
    poor      precipitation > 70 %, min temp < 0 °C, wind > 50 km/h, or thunderstorm (code ≥ 95)
    moderate  precipitation > 40 %, min temp < 5 °C, or wind > 30 km/h
    good      otherwise
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

import requests
from flask import current_app, has_app_context
from sqlalchemy.exc import SQLAlchemyError

from capacity_insights.models import db
from capacity_insights.models.auth import Tenant
from capacity_insights.models.planning import Project
from capacity_insights.models.weather import WeatherCache

logger = logging.getLogger(__name__)

_DEFAULT_URL = "https://api.open-meteo.com/v1/forecast"
_DEFAULT_TIMEOUT = 5
_DAILY_FIELDS = (
    "weather_code",
    "temperature_2m_min",
    "temperature_2m_max",
    "precipitation_probability_max",
    "wind_speed_10m_max",
)

# WMO weather interpretation codes (subset shown in texts)
WEATHER_DESCRIPTIONS = {
    0: "clear sky",
    1: "mainly clear",
    2: "partly cloudy",
    3: "overcast",
    45: "fog",
    48: "rime fog",
    51: "light drizzle",
    53: "drizzle",
    55: "dense drizzle",
    61: "light rain",
    63: "rain",
    65: "heavy rain",
    66: "freezing rain",
    67: "heavy freezing rain",
    71: "light snow",
    73: "snow",
    75: "heavy snow",
    80: "rain showers",
    81: "heavy rain showers",
    82: "violent rain showers",
    85: "snow showers",
    86: "heavy snow showers",
    95: "thunderstorm",
    96: "thunderstorm with hail",
    99: "severe thunderstorm with hail",
}


@dataclass
class WeatherDay:
    date: date
    rating: str
    weather_code: int | None = None
    temp_min: float | None = None
    temp_max: float | None = None
    precipitation_probability: int | None = None
    wind_speed_max: float | None = None

    @property
    def description(self) -> str:
        return WEATHER_DESCRIPTIONS.get(self.weather_code, "unknown")

    def to_dict(self) -> dict:
        return {
            "date": self.date.isoformat(),
            "rating": self.rating,
            "description": self.description,
            "weather_code": self.weather_code,
            "temp_min": self.temp_min,
            "temp_max": self.temp_max,
            "precipitation_probability": self.precipitation_probability,
            "wind_speed_max": self.wind_speed_max,
        }


def rate_construction_day(*, weather_code: int | None, temp_min: float | None,
                          precipitation_probability: int | None,
                          wind_speed_max: float | None) -> str:
    precip = precipitation_probability or 0
    wind = wind_speed_max or 0
    code = weather_code or 0
    if precip > 70 or (temp_min is not None and temp_min < 0) or wind > 50 or code >= 95:
        return "poor"
    if precip > 40 or (temp_min is not None and temp_min < 5) or wind > 30:
        return "moderate"
    return "good"


class OpenMeteoClient:
    """Thin HTTP client for the Open-Meteo forecast endpoint."""

    def __init__(self, session: requests.Session | None = None,
                 url: str = _DEFAULT_URL, timeout: float = _DEFAULT_TIMEOUT) -> None:
        self._session = session
        self.url = url
        self.timeout = timeout

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def fetch_daily(self, lat: float, lng: float, days: int) -> list[WeatherDay]:
        """Fetch daily forecasts. Raises requests / ValueError / KeyError on bad responses."""
        resp = self.session.get(
            self.url,
            params={
                "latitude": lat,
                "longitude": lng,
                "daily": ",".join(_DAILY_FIELDS),
                "timezone": "auto",
                "forecast_days": days,
            },
            timeout=self.timeout,
        )
        resp.raise_for_status()
        daily = resp.json()["daily"]

        result = []
        for i, day in enumerate(daily["time"]):
            code = daily["weather_code"][i]
            t_min = daily["temperature_2m_min"][i]
            precip = daily["precipitation_probability_max"][i]
            wind = daily["wind_speed_10m_max"][i]
            result.append(WeatherDay(
                date=date.fromisoformat(day),
                weather_code=code,
                temp_min=t_min,
                temp_max=daily["temperature_2m_max"][i],
                precipitation_probability=precip,
                wind_speed_max=wind,
                rating=rate_construction_day(
                    weather_code=code, temp_min=t_min,
                    precipitation_probability=precip, wind_speed_max=wind,
                ),
            ))
        return result


class WeatherContextProvider:
    """
    Cached weather lookup used to enrich at-risk phase recommendations.

    Usage:
        provider = WeatherContextProvider.from_config()
        days = provider.get_forecast(48.14, 11.58, days=3)   # None on failure
    """

    def __init__(self, client: OpenMeteoClient | None = None, enabled: bool = True) -> None:
        self.client = client or OpenMeteoClient()
        self.enabled = enabled

    @classmethod
    def from_config(cls) -> "WeatherContextProvider":
        cfg = current_app.config if has_app_context() else {}
        return cls(
            client=OpenMeteoClient(
                url=cfg.get("WEATHER_API_URL", _DEFAULT_URL),
                timeout=cfg.get("WEATHER_TIMEOUT", _DEFAULT_TIMEOUT),
            ),
            enabled=cfg.get("WEATHER_ENABLED", True),
        )

    def get_forecast(self, lat: float | None, lng: float | None, days: int = 3,
                     *, today: date | None = None) -> list[WeatherDay] | None:
        if not self.enabled or lat is None or lng is None:
            return None

        today = today or date.today()
        key_lat, key_lng = round(lat, 2), round(lng, 2)

        try:
            cached = self._read_cache(key_lat, key_lng, today, days)
        except SQLAlchemyError as exc:
            logger.warning("Weather cache read failed for %.2f,%.2f: %s", key_lat, key_lng, exc)
            cached = None
        if cached is not None:
            return cached

        return self.refresh(key_lat, key_lng, days)

    def refresh(self, lat: float, lng: float, days: int = 3) -> list[WeatherDay] | None:
        """Fetch from Open-Meteo and overwrite the cached days, ignoring cache freshness."""
        key_lat, key_lng = round(lat, 2), round(lng, 2)
        try:
            forecast = self.client.fetch_daily(key_lat, key_lng, days)
        except (requests.RequestException, ValueError, KeyError, IndexError, TypeError) as exc:
            logger.warning("Weather forecast unavailable for %.2f,%.2f: %s", key_lat, key_lng, exc)
            return None

        self._write_cache(key_lat, key_lng, forecast)
        return forecast[:days]

    # ── cache ────────────────────────────────────────────────────────────

    @staticmethod
    def _read_cache(lat: float, lng: float, start: date, days: int) -> list[WeatherDay] | None:
        wanted = [start + timedelta(days=i) for i in range(days)]
        fresh_since = datetime.combine(start, datetime.min.time())
        rows = WeatherCache.query.filter(
            WeatherCache.latitude == lat,
            WeatherCache.longitude == lng,
            WeatherCache.forecast_date.in_(wanted),
        ).order_by(WeatherCache.forecast_date).all()
        if len(rows) < days:
            return None
        if any(_naive(r.fetched_at) < fresh_since for r in rows):
            return None
        return [
            WeatherDay(
                date=r.forecast_date,
                rating=r.rating,
                weather_code=r.weather_code,
                temp_min=r.temp_min,
                temp_max=r.temp_max,
                precipitation_probability=r.precipitation_probability,
                wind_speed_max=r.wind_speed_max,
            )
            for r in rows
        ]

    @staticmethod
    def _write_cache(lat: float, lng: float, forecast: list[WeatherDay]) -> None:
        try:
            with db.session.begin_nested():
                WeatherCache.query.filter(
                    WeatherCache.latitude == lat,
                    WeatherCache.longitude == lng,
                    WeatherCache.forecast_date.in_([d.date for d in forecast]),
                ).delete(synchronize_session=False)
                for d in forecast:
                    db.session.add(WeatherCache(
                        latitude=lat,
                        longitude=lng,
                        forecast_date=d.date,
                        weather_code=d.weather_code,
                        temp_min=d.temp_min,
                        temp_max=d.temp_max,
                        precipitation_probability=d.precipitation_probability,
                        wind_speed_max=d.wind_speed_max,
                        rating=d.rating,
                    ))
        except SQLAlchemyError as exc:
            logger.warning("Weather cache write failed for %.2f,%.2f: %s", lat, lng, exc)


def _naive(value: datetime | None) -> datetime:
    """SQLite drops tzinfo; compare everything as naive UTC."""
    if value is None:
        return datetime.min
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# ── daily cache refresh ──────────────────────────────────────────────────

CACHE_RETENTION_DAYS = 7


def project_locations() -> list[tuple[float, float]]:
    """Distinct rounded coordinates of active projects of active tenants."""
    rows = (
        db.session.query(Project.latitude, Project.longitude)
        .join(Tenant, Tenant.id == Project.tenant_id)
        .filter(
            Tenant.is_active.is_(True),
            Project.status == "active",
            Project.latitude.isnot(None),
            Project.longitude.isnot(None),
        )
        .all()
    )
    return sorted({(round(lat, 2), round(lng, 2)) for lat, lng in rows})


def purge_weather_cache(before: date) -> int:
    """Delete cached forecast days older than ``before``. Returns the row count."""
    return WeatherCache.query.filter(
        WeatherCache.forecast_date < before,
    ).delete(synchronize_session=False)


def refresh_weather_cache(provider: WeatherContextProvider | None = None, *,
                          today: date | None = None, days: int | None = None) -> dict:
    """
    Warm the cache for every project location and drop stale rows.

    A location whose fetch fails is counted and skipped. With weather
    disabled only the purge runs.
    """
    provider = provider or WeatherContextProvider.from_config()
    today = today or date.today()
    if days is None:
        days = current_app.config.get("WEATHER_FORECAST_DAYS", 3) if has_app_context() else 3

    locations = project_locations()
    refreshed = failed = 0
    if provider.enabled:
        for lat, lng in locations:
            if provider.refresh(lat, lng, days) is None:
                failed += 1
            else:
                refreshed += 1

    purged = purge_weather_cache(today - timedelta(days=CACHE_RETENTION_DAYS))
    db.session.commit()

    logger.info("Weather cache refresh: %d/%d locations, %d failed, %d rows purged",
                refreshed, len(locations), failed, purged)
    return {
        "enabled": provider.enabled,
        "locations": len(locations),
        "refreshed": refreshed,
        "failed": failed,
        "rowsPurged": purged,
    }
