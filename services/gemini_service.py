"""
Gemini LLM Service
Only ever receives tokenized prompts; callers detokenize the reply
"""
import os
from typing import List, Dict, Any, Optional, Tuple
import google.generativeai as genai
from google.generativeai.types import HarmCategory, HarmBlockThreshold
from dotenv import load_dotenv
import logging

from services.errors import LLMServiceError

load_dotenv()

logger = logging.getLogger(__name__)

# Questions about debt, gambling spend or payday loans trip the default filters
_SAFETY_SETTINGS = {
    category: HarmBlockThreshold.BLOCK_ONLY_HIGH
    for category in (
        HarmCategory.HARM_CATEGORY_HARASSMENT,
        HarmCategory.HARM_CATEGORY_HATE_SPEECH,
        HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT,
        HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT,
    )
}

_ROLE_MAP = {"assistant": "model", "model": "model"}


def to_gemini_history(messages: List[Dict[str, str]]) -> Tuple[List[Dict[str, Any]], str]:
    """
    Split chat messages into Gemini history and the turn to send.

    Roles other than assistant/model are sent as "user".

    Returns:
        (history, current_message)
    """
    contents = [
        {"role": _ROLE_MAP.get(m.get("role", "user"), "user"), "parts": [m.get("content", "")]}
        for m in messages
    ]
    if not contents:
        return [], ""
    return contents[:-1], contents[-1]["parts"][0]


class GeminiService:
    """Thin async wrapper around google-generativeai chat sessions"""

    def __init__(self, api_key: Optional[str] = None, model_name: Optional[str] = None):
        api_key = api_key or os.getenv("GEMINI_API_KEY")
        if not api_key:
            raise ValueError("GEMINI_API_KEY environment variable is required")
        genai.configure(api_key=api_key)

        self.model_name = model_name or os.getenv("GEMINI_MODEL", "gemini-2.0-flash")
        self.safety_settings = dict(_SAFETY_SETTINGS)
        logger.info(f"Gemini service ready (model={self.model_name})")

    async def generate_response(
        self,
        system_instruction: str,
        messages: List[Dict[str, str]],
        temperature: float = 0.7,
        max_output_tokens: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Run one chat turn.

        Args:
            system_instruction: Tokenized system prompt
            messages: Earlier turns followed by the current user message
            temperature: Sampling temperature
            max_output_tokens: Optional cap on the reply length

        Returns:
            {"content", "finish_reason", "usage_metadata"}

        Raises:
            LLMServiceError: Any SDK or transport failure. The message names
                the exception class only, never prompt content.
        """
        history, current = to_gemini_history(messages)
        config: Dict[str, Any] = {"temperature": temperature}
        if max_output_tokens:
            config["max_output_tokens"] = max_output_tokens

        try:
            # system_instruction is a model argument, start_chat does not take it
            model = genai.GenerativeModel(
                model_name=self.model_name,
                safety_settings=self.safety_settings,
                system_instruction=system_instruction,
            )
            response = await model.start_chat(history=history).send_message_async(
                current, generation_config=config
            )
            content = response.text
        except Exception as e:
            logger.error(f"Gemini call failed: {e.__class__.__name__}")
            raise LLMServiceError(f"Gemini call failed: {e.__class__.__name__}") from e

        usage = getattr(response, "usage_metadata", None)
        return {
            "content": content,
            "finish_reason": response.candidates[0].finish_reason if response.candidates else "STOP",
            "usage_metadata": None if usage is None else {
                "prompt_tokens": getattr(usage, "prompt_token_count", None),
                "candidates_tokens": getattr(usage, "candidates_token_count", None),
                "total_tokens": getattr(usage, "total_token_count", None),
            },
        }

    async def complete(self, system_instruction: str, prompt: str, temperature: float = 0.3) -> str:
        """Single-turn completion returning the reply text."""
        result = await self.generate_response(
            system_instruction,
            [{"role": "user", "content": prompt}],
            temperature=temperature,
        )
        return result["content"]
