"""Tunable thresholds for style learning and aggregation.

Every value can be overridden through an environment variable of the same
name prefixed with ``STYLE_`` (e.g. ``STYLE_MIN_EDITS_FOR_ANALYSIS=3``).
"""

import os


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(f"STYLE_{name}", "")
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(f"STYLE_{name}", "")
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


# Learning pipeline
MIN_EDITS_FOR_ANALYSIS = _env_int("MIN_EDITS_FOR_ANALYSIS", 5)
ANALYSIS_INTERVAL = _env_int("ANALYSIS_INTERVAL", 10)
MAX_EDITS_PER_ANALYSIS = _env_int("MAX_EDITS_PER_ANALYSIS", 50)
MIN_CONFIDENCE_THRESHOLD = _env_float("MIN_CONFIDENCE_THRESHOLD", 0.5)
MAX_SEED_LETTERS_PER_ANALYSIS = _env_int("MAX_SEED_LETTERS_PER_ANALYSIS", 10)
MAX_EDITS_PER_SECTION_IN_PROMPT = 10
EDIT_TEXT_PROMPT_LIMIT = 500
SEED_LETTER_PROMPT_LIMIT = 2000
MAX_PHRASES_PER_SECTION = 20

# LLM call parameters for analysis
ANALYSIS_MAX_TOKENS = _env_int("ANALYSIS_MAX_TOKENS", 4096)
ANALYSIS_TEMPERATURE = _env_float("ANALYSIS_TEMPERATURE", 0.2)

# Profile cache
PROFILE_CACHE_TTL_SECONDS = _env_float("PROFILE_CACHE_TTL_SECONDS", 300.0)
PROFILE_CACHE_MAX_ENTRIES = _env_int("PROFILE_CACHE_MAX_ENTRIES", 1000)

# Prompt conditioning
MAX_PHRASES_IN_PROMPT = 3
MAX_VOCABULARY_IN_PROMPT = 8
INCLUDE_THRESHOLD = 0.8
OMIT_THRESHOLD = 0.2
WELL_ESTABLISHED_CONFIDENCE = 0.7

# Population aggregation
MIN_CLINICIANS_FOR_AGGREGATION = _env_int("MIN_CLINICIANS_FOR_AGGREGATION", 5)
MIN_LETTERS_FOR_AGGREGATION = _env_int("MIN_LETTERS_FOR_AGGREGATION", 10)
MAX_PATTERNS_PER_CATEGORY = 50
MIN_PATTERN_FREQUENCY = 2
MAX_SECTION_ORDER_PATTERNS = 20
