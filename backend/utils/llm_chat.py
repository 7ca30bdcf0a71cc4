"""
LLM chat using Google Generative AI (Gemini).
Uses LLM_API_KEY from environment (Gemini API key from Google AI Studio).
The coaching proxy needs multi-turn history, so chat_with_history maps stored
chat turns onto Gemini's user/model roles.
"""
import asyncio
import logging
import os
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

LLM_API_KEY = os.environ.get("LLM_API_KEY")
DEFAULT_MODEL = os.environ.get("LLM_MODEL", "gemini-2.0-flash")
MAX_OUTPUT_TOKENS = 4096


class LLMError(Exception):
    """Raised when the model provider fails or returns nothing."""


def _get_api_key() -> Optional[str]:
    return LLM_API_KEY


def _build_model(system_prompt: str, model: str):
    import google.generativeai as genai
    api_key = _get_api_key()
    if not api_key:
        raise LLMError("LLM_API_KEY not found in environment")
    genai.configure(api_key=api_key)
    model_name = model if model and "gemini" in model else DEFAULT_MODEL
    return genai.GenerativeModel(
        model_name,
        system_instruction=system_prompt,
        generation_config={"max_output_tokens": MAX_OUTPUT_TOKENS},
    )


def _response_text(response) -> str:
    try:
        text = response.text if response else None
    except ValueError as e:
        # Raised by the SDK when the candidate was blocked or has no text part
        raise LLMError(f"LLM returned no text: {e}") from e
    if not text:
        raise LLMError("Empty response from LLM")
    return text


def _sync_chat(system_prompt: str, user_text: str, model: str = DEFAULT_MODEL) -> str:
    """Synchronous single-turn completion."""
    gemini = _build_model(system_prompt, model)
    try:
        response = gemini.generate_content(user_text)
    except LLMError:
        raise
    except Exception as e:
        raise LLMError(str(e)) from e
    return _response_text(response)


def _to_gemini_contents(messages: List[Dict[str, str]]) -> List[Dict]:
    contents = []
    for m in messages:
        role = "model" if m.get("role") == "assistant" else "user"
        contents.append({"role": role, "parts": [m.get("content") or ""]})
    return contents


def _sync_chat_with_history(
    system_prompt: str,
    messages: List[Dict[str, str]],
    model: str = DEFAULT_MODEL,
) -> str:
    """Synchronous multi-turn completion over ordered user/assistant messages."""
    if not messages:
        raise LLMError("No messages to send")
    gemini = _build_model(system_prompt, model)
    try:
        response = gemini.generate_content(_to_gemini_contents(messages))
    except Exception as e:
        raise LLMError(str(e)) from e
    return _response_text(response)


async def chat(
    system_prompt: str,
    user_text: str,
    model: str = DEFAULT_MODEL,
) -> str:
    """Async chat completion. Runs sync SDK in thread pool."""
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(
        None,
        lambda: _sync_chat(system_prompt, user_text, model),
    )


async def chat_with_history(
    system_prompt: str,
    messages: List[Dict[str, str]],
    model: str = DEFAULT_MODEL,
) -> str:
    """Async multi-turn chat completion."""
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(
        None,
        lambda: _sync_chat_with_history(system_prompt, messages, model),
    )
