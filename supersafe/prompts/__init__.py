"""
Prompt Management for Supersafe

Prompts live in editable text files next to this module and can be
overridden via environment variables.

Usage:
    from supersafe.prompts import get_prompt, render_prompt

    instruction = get_prompt("threat_detection")
    spoken = render_prompt("speech_alert", threat_level="high", summary="...", suggested_action="...")
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# Directory containing prompt files
PROMPTS_DIR = Path(__file__).parent

# Cache for loaded prompts
_cache: Dict[str, str] = {}


def get_prompt(name: str, default: Optional[str] = None) -> str:
    """Load prompt template by name.

    Looks for:
    1. Environment variable SS_PROMPT_{NAME} (uppercase)
    2. File prompts/{name}.txt
    3. Default value if provided
    """
    if name in _cache:
        return _cache[name]

    env_value = os.environ.get(f"SS_PROMPT_{name.upper()}")
    if env_value:
        _cache[name] = env_value
        return env_value

    txt_path = PROMPTS_DIR / f"{name}.txt"
    if txt_path.exists():
        template = txt_path.read_text(encoding="utf-8").strip()
        _cache[name] = template
        return template

    if default is not None:
        return default

    logger.warning(f"Prompt '{name}' not found in {PROMPTS_DIR}")
    return ""


def render_prompt(name: str, default: Optional[str] = None, **kwargs: Any) -> str:
    """Load and render prompt template with str.format variables."""
    template = get_prompt(name, default)
    if not template:
        return ""

    try:
        return template.format(**kwargs)
    except (KeyError, IndexError) as e:
        logger.warning(f"Missing variable {e} in prompt '{name}'")
        return template


def list_prompts() -> Dict[str, str]:
    """Map of prompt name to file path."""
    return {path.stem: str(path) for path in sorted(PROMPTS_DIR.glob("*.txt"))}


def reload_prompts():
    """Clear prompt cache to force reload from files."""
    _cache.clear()
