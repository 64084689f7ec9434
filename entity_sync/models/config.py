"""Engine configuration."""

from pydantic import BaseModel, Field


class EngineConfig(BaseModel):
    """Timings and identity conventions for a SyncEngine."""

    debounce_seconds: float = Field(gt=0, default=1.0)
    saved_indicator_seconds: float = Field(ge=0, default=2.0)
    error_indicator_seconds: float = Field(ge=0, default=3.0)
    placeholder_prefix: str = "temp"

    @classmethod
    def from_settings(cls, settings=None) -> "EngineConfig":
        """Build the config from environment-backed Settings."""
        from entity_sync.config import get_settings

        settings = settings or get_settings()
        return cls(
            debounce_seconds=settings.debounce_seconds,
            saved_indicator_seconds=settings.saved_indicator_seconds,
            error_indicator_seconds=settings.error_indicator_seconds,
            placeholder_prefix=settings.placeholder_prefix,
        )
