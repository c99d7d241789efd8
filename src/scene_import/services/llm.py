"""
Chat model factory for the two remote AI calls: batched page transcription
(vision) and scene structuring (text).
"""
import logging
from typing import Literal

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_openai import ChatOpenAI
from langchain_google_genai import ChatGoogleGenerativeAI
from scene_import.config import Settings

logger = logging.getLogger(__name__)

Purpose = Literal["vision", "structuring"]


def build_chat_model(settings: Settings, purpose: Purpose) -> BaseChatModel | None:
    """
    Returns None when the configured provider has no API key — callers treat
    that as "remote AI unavailable" and move on to local strategies.
    Retries are disabled: the pipeline owns its fallbacks.
    """
    if not settings.remote_ai_configured:
        logger.info("No %s API key configured — %s model unavailable", settings.ai_provider, purpose)
        return None

    if purpose == "vision":
        model, temperature, timeout_ms = settings.vision_model, 0.0, settings.remote_ocr_timeout_ms
    else:
        model, temperature, timeout_ms = (
            settings.structuring_model, settings.structuring_temperature, settings.structuring_timeout_ms,
        )

    if settings.ai_provider == "google":
        return ChatGoogleGenerativeAI(
            model=model,
            temperature=temperature,
            google_api_key=settings.google_api_key,
            timeout=timeout_ms / 1000,
            max_retries=0,
        )

    kwargs = {}
    if purpose == "structuring":
        kwargs["model_kwargs"] = {"response_format": {"type": "json_object"}}
    return ChatOpenAI(
        model=model,
        temperature=temperature,
        api_key=settings.openai_api_key,
        timeout=timeout_ms / 1000,
        max_retries=0,
        **kwargs,
    )
