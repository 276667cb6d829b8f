"""
QAForge
AI module — generation client and prompt/response handling.

Submodules:
    - gateway: LLM Gateway (provider routing, timeout, cost tracking)
    - prompt_registry: YAML prompt template loading
    - prompt_builder: size-bounded prompt assembly per stage
    - response_parser: layered JSON extraction from model output
    - normalizer / coverage: schema coercion and test-case coverage floor
"""

from flask import current_app

from qaforge.ai.gateway import LLMGateway
from qaforge.ai.prompt_registry import PromptRegistry


def init_ai(app, gateway=None, registry=None):
    """Attach the generation client and prompt registry to ``app``."""
    if gateway is None:
        gateway = LLMGateway(
            default_model=app.config.get("LLM_DEFAULT_CHAT_MODEL"),
            timeout=app.config.get("LLM_TIMEOUT_SECONDS"),
            max_retries=app.config.get("LLM_MAX_RETRIES", 1),
        )
    if registry is None:
        registry = PromptRegistry(app.config.get("PROMPTS_DIR"), app.config.get("PROMPT_VERSIONS"))
    app.extensions["llm_gateway"] = gateway
    app.extensions["prompt_registry"] = registry


def get_gateway():
    """Generation client of the current app."""
    return current_app.extensions["llm_gateway"]


def get_registry() -> PromptRegistry:
    """Prompt registry of the current app."""
    return current_app.extensions["prompt_registry"]
