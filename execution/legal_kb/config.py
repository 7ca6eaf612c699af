"""
Pipeline Configuration for the Legal Knowledge Base

Model tiers, per-feature limits and token-accounting rules. Every value has a
default and can be overridden through environment variables (a ``.env`` file
is loaded by the API module).
"""

import os
from dataclasses import dataclass, field
from typing import Optional


# Feature kinds served by the pipeline
FEATURES = ("search", "qa", "consultant")

# Valid scopes for the pro-tier multiplier
MULTIPLIER_SCOPES = frozenset({"all", "generation"})


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


@dataclass
class FeatureSettings:
    """Limits for one feature kind."""
    max_input_chars: int
    base_overhead_tokens: int
    retrieval_limit: int


DEFAULT_FEATURE_SETTINGS = {
    "search": FeatureSettings(max_input_chars=1000, base_overhead_tokens=1000, retrieval_limit=5),
    "qa": FeatureSettings(max_input_chars=2000, base_overhead_tokens=10000, retrieval_limit=20),
    "consultant": FeatureSettings(max_input_chars=2000, base_overhead_tokens=5000, retrieval_limit=20),
}


@dataclass
class ModelSettings:
    """Model identifiers and provider endpoint."""
    flash_model: str = "gemini-2.5-flash"
    pro_model: str = "gemini-2.5-pro"
    embedding_model: str = "gemini-embedding-001"
    embedding_dimensions: int = 3072
    base_url: Optional[str] = "https://generativelanguage.googleapis.com/v1beta/openai/"
    api_key_env: str = "LLM_API_KEY"
    timeout: float = 120.0

    def model_for_tier(self, use_pro_model: bool) -> str:
        return self.pro_model if use_pro_model else self.flash_model

    @classmethod
    def from_env(cls) -> "ModelSettings":
        defaults = cls()
        return cls(
            flash_model=os.getenv("FLASH_MODEL", defaults.flash_model),
            pro_model=os.getenv("PRO_MODEL", defaults.pro_model),
            embedding_model=os.getenv("EMBEDDING_MODEL", defaults.embedding_model),
            embedding_dimensions=_env_int("EMBEDDING_DIMENSIONS", defaults.embedding_dimensions),
            base_url=os.getenv("LLM_BASE_URL", defaults.base_url) or None,
            timeout=float(os.getenv("LLM_TIMEOUT", str(defaults.timeout))),
        )


@dataclass
class PipelineConfig:
    """Top-level configuration shared by every pipeline component."""
    models: ModelSettings = field(default_factory=ModelSettings)
    features: dict = field(
        default_factory=lambda: {k: FeatureSettings(**vars(v)) for k, v in DEFAULT_FEATURE_SETTINGS.items()}
    )
    chars_per_token: int = 4
    max_keywords: int = 5
    pro_model_multiplier: int = 10
    pro_multiplier_scope: str = "all"
    max_tool_iterations: int = 6

    def __post_init__(self):
        if self.pro_multiplier_scope not in MULTIPLIER_SCOPES:
            raise ValueError(
                f"pro_multiplier_scope must be one of {sorted(MULTIPLIER_SCOPES)}, "
                f"got {self.pro_multiplier_scope!r}"
            )
        if self.max_tool_iterations < 1:
            raise ValueError("max_tool_iterations must be at least 1")

    def feature(self, feature: str) -> FeatureSettings:
        """Settings for a feature kind; unknown kinds raise KeyError."""
        return self.features[feature]

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """
        Build a configuration from environment variables.

        Recognised variables: FLASH_MODEL, PRO_MODEL, EMBEDDING_MODEL,
        EMBEDDING_DIMENSIONS, LLM_BASE_URL, LLM_TIMEOUT, PRO_MODEL_MULTIPLIER,
        PRO_MULTIPLIER_SCOPE, MAX_TOOL_ITERATIONS and
        {SEARCH,QA,CONSULTANT}_TOKEN_OVERHEAD / _MAX_CHARS / _RETRIEVAL_LIMIT.
        """
        features = {}
        for name, base in DEFAULT_FEATURE_SETTINGS.items():
            prefix = name.upper()
            features[name] = FeatureSettings(
                max_input_chars=_env_int(f"{prefix}_MAX_CHARS", base.max_input_chars),
                base_overhead_tokens=_env_int(f"{prefix}_TOKEN_OVERHEAD", base.base_overhead_tokens),
                retrieval_limit=_env_int(f"{prefix}_RETRIEVAL_LIMIT", base.retrieval_limit),
            )

        return cls(
            models=ModelSettings.from_env(),
            features=features,
            pro_model_multiplier=_env_int("PRO_MODEL_MULTIPLIER", 10),
            pro_multiplier_scope=os.getenv("PRO_MULTIPLIER_SCOPE", "all"),
            max_tool_iterations=_env_int("MAX_TOOL_ITERATIONS", 6),
        )
