"""
Pydantic model for application configuration.
Provides robust validation for all settings.
"""

from pydantic import BaseModel, Field, field_validator

from bili_cli.exceptions import ConfigurationError

# Maps user-facing tier names to API quality ids and provides metadata
QUALITY_MAP = {
    # User name -> API code
    "360p": 16,
    "480p": 32,
    "720p": 64,
    "720p60": 74,
    "1080p": 80,
    "1080p+": 112,
    "1080p60": 116,
    "4k": 120,
    "hdr": 125,
    "8k": 127,
    # API code -> Metadata (for internal use)
    16: {"name": "360P", "color": "white", "login": False},
    32: {"name": "480P", "color": "white", "login": False},
    64: {"name": "720P", "color": "cyan", "login": True},
    74: {"name": "720P60", "color": "cyan", "login": True},
    80: {"name": "1080P", "color": "green", "login": True},
    112: {"name": "1080P+", "color": "magenta", "login": True},
    116: {"name": "1080P60", "color": "magenta", "login": True},
    120: {"name": "4K", "color": "magenta", "login": True},
    125: {"name": "HDR", "color": "yellow", "login": True},
    127: {"name": "8K", "color": "yellow", "login": True},
}

QUALITY_NAMES = [k for k in QUALITY_MAP if isinstance(k, str)]

# Codec ids used by the playurl API
CODEC_IDS = {7: "avc", 12: "hevc", 13: "av1"}

DEFAULT_CODEC_PREFERENCE = ["avc", "hevc", "av1"]

DEFAULT_OUTPUT_TEMPLATE = "{parent}/%{?is_multipart,{ordinal:02d} - |}{title}.{ext}"


def get_quality_info(quality_id: int) -> dict:
    """Gets all information for a given quality ID from the central map."""
    return QUALITY_MAP.get(
        quality_id, {"name": f"Q{quality_id}", "color": "white", "login": True}
    )


def quality_id_for(name: str) -> int:
    """Translates a tier name such as '1080p' into its API quality id."""
    normalized = name.strip().lower()
    if normalized not in QUALITY_NAMES:
        raise ConfigurationError(
            f"Unknown quality '{name}'. Use one of: {', '.join(QUALITY_NAMES)}."
        )
    return QUALITY_MAP[normalized]


class DownloadConfig(BaseModel):
    """A validated configuration model for the application."""

    # Authentication
    cookie: str = ""

    # Download Settings
    quality: str = "1080p"
    codec_preference: list[str] = Field(
        default_factory=lambda: list(DEFAULT_CODEC_PREFERENCE)
    )
    output_dir: str = "./downloads"
    output_template: str = DEFAULT_OUTPUT_TEMPLATE
    max_workers: int = 8
    max_concurrent_jobs: int = 3
    segment_size: int = 4 * 1024 * 1024
    skip_existing: bool = True

    # Retry & Risk Control
    max_segment_attempts: int = 5
    retry_attempts: int = 4
    retry_base_delay: float = 1.0
    request_timeout: float = 30.0
    risk_cooldown: float = 30.0
    risk_threshold: int = 3

    # Merging
    ffmpeg_path: str = "ffmpeg"
    verify_container: bool = False

    # Internal fields not loaded from INI file
    config_path: str = Field("", repr=False)
    source_urls: list[str] = Field(default_factory=list, repr=False)
    parts: str = Field("", repr=False)

    class Config:
        """Pydantic model configuration."""

        validate_assignment = True
        str_strip_whitespace = True

    @field_validator("quality")
    @classmethod
    def validate_quality(cls, v: str) -> str:
        """Ensures quality is one of the known tier names and normalizes its case."""
        normalized = v.strip().lower()
        if normalized not in QUALITY_NAMES:
            raise ValueError(f"Quality must be one of: {', '.join(QUALITY_NAMES)}.")
        return normalized

    @field_validator("codec_preference")
    @classmethod
    def validate_codecs(cls, v: list[str]) -> list[str]:
        """Ensures every codec in the preference list is known."""
        known = set(CODEC_IDS.values())
        normalized = [c.strip().lower() for c in v if c.strip()]
        if unknown := [c for c in normalized if c not in known]:
            raise ValueError(
                f"Unknown codec(s): {', '.join(unknown)}. Use avc, hevc or av1."
            )
        return normalized or list(DEFAULT_CODEC_PREFERENCE)

    @field_validator("max_workers")
    @classmethod
    def validate_workers(cls, v: int) -> int:
        """Ensures a reasonable number of concurrent segment fetches."""
        if v < 1 or v > 32:
            raise ValueError("Max workers must be between 1 and 32.")
        return v

    @field_validator("max_concurrent_jobs")
    @classmethod
    def validate_jobs(cls, v: int) -> int:
        if v < 1 or v > 16:
            raise ValueError("Max concurrent jobs must be between 1 and 16.")
        return v

    @field_validator("segment_size")
    @classmethod
    def validate_segment_size(cls, v: int) -> int:
        if v < 64 * 1024:
            raise ValueError("Segment size must be at least 65536 bytes.")
        return v

    @field_validator("max_segment_attempts", "retry_attempts", "risk_threshold")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Attempt counts and thresholds must be at least 1.")
        return v

    @field_validator("output_template")
    @classmethod
    def validate_template(cls, v: str) -> str:
        """Validates the output path template."""
        if not v:
            raise ValueError("Output template cannot be empty.")
        if ".." in v or v.startswith(("/", "\\")):
            raise ValueError(
                "Output template cannot contain relative '..' or absolute paths."
            )
        if "{title}" not in v:
            raise ValueError("Output template must contain {title}.")
        return v

    @property
    def quality_id(self) -> int:
        """The API quality id for the configured tier."""
        return quality_id_for(self.quality)

    @classmethod
    def get_ini_keys(cls) -> set[str]:
        """Returns a set of all keys that are expected in the INI file."""
        internal_fields = {"config_path", "source_urls", "parts"}
        return {key for key in cls.model_fields if key not in internal_fields}
