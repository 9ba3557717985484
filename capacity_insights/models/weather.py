"""
Weather forecast cache.

Forecast days are stored per rounded coordinate pair so that projects on
the same site share one upstream call per day.
"""

from datetime import datetime, timezone

from capacity_insights.models import db


WEATHER_RATINGS = {"good", "moderate", "poor"}


class WeatherCache(db.Model):
    __tablename__ = "weather_cache"
    __table_args__ = (
        db.UniqueConstraint("latitude", "longitude", "forecast_date",
                            name="uq_weather_cache_coord_date"),
    )

    id = db.Column(db.Integer, primary_key=True)
    latitude = db.Column(db.Float, nullable=False, comment="Rounded to 2 decimals")
    longitude = db.Column(db.Float, nullable=False, comment="Rounded to 2 decimals")
    forecast_date = db.Column(db.Date, nullable=False)
    weather_code = db.Column(db.Integer, nullable=True)
    temp_min = db.Column(db.Float, nullable=True)
    temp_max = db.Column(db.Float, nullable=True)
    precipitation_probability = db.Column(db.Integer, nullable=True)
    wind_speed_max = db.Column(db.Float, nullable=True)
    rating = db.Column(db.String(20), nullable=False, comment="good, moderate, poor")
    fetched_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "date": self.forecast_date.isoformat() if self.forecast_date else None,
            "weather_code": self.weather_code,
            "temp_min": self.temp_min,
            "temp_max": self.temp_max,
            "precipitation_probability": self.precipitation_probability,
            "wind_speed_max": self.wind_speed_max,
            "rating": self.rating,
        }
