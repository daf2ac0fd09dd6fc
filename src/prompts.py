import json
import re
from functools import lru_cache
from typing import Any, Optional

from config import Config


EMAIL_CONTEXT_PREFIX = (
    "[CONTEXT: The following text is an email or short message that may contain "
    "filming addresses. Extract date, project name, production companies and ONLY "
    "filming locations (not parking/catering).]\n\n"
)


@lru_cache(maxsize=None)
def load_prompt(name: str) -> str:
    path = Config.PROMPTS_DIR / f"{name}.txt"
    return path.read_text(encoding="utf-8").strip()


def sanitize_model_text(text: str) -> str:
    """Light cleanup before text is embedded into a prompt."""
    cleaned = re.sub(r"[\u00a0\t]+", " ", text or "")
    cleaned = cleaned.replace("\r", "")
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


def frame_for_content_type(text: str, content_type: str) -> str:
    if content_type == "email":
        return EMAIL_CONTEXT_PREFIX + text
    return text


def build_direct_prompt(text: str, use_crew_first: bool) -> str:
    name = "crew_first_direct" if use_crew_first else "callsheet_direct"
    return f"{load_prompt(name)}\n\n{sanitize_model_text(text)}"


def build_agent_instruction(use_crew_first: bool) -> str:
    name = "crew_first_agent_system" if use_crew_first else "agent_system"
    # The agent still has to land on the same schema as direct mode
    rules = load_prompt("crew_first_direct" if use_crew_first else "callsheet_direct")
    return f"{load_prompt(name)}\n\n{rules}"


def build_vision_context(raw_text: str, draft: Optional[Any] = None) -> str:
    text = sanitize_model_text(raw_text)
    if draft is None:
        return text
    return (
        "PRELIMINARY_DATA_JSON:\n"
        f"{json.dumps(draft, ensure_ascii=False, indent=2)}\n\n"
        f"RAW_OCR_TEXT:\n{text}"
    )


def build_vision_prompt(context: str, use_crew_first: bool) -> str:
    name = "crew_first_vision" if use_crew_first else "vision"
    return f"{load_prompt(name)}\n{context.strip()}"
