"""Per-session completion configuration."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Dict, Optional

from chat_ai.env import get_env_api_key, provider_for_model
from chat_ai.types import DEFAULT_MODEL_NAME, CompletionOptions, Conversation


@dataclass
class SessionConfig:
    model_name: str = DEFAULT_MODEL_NAME
    system_instruction: Optional[str] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    max_output_tokens: Optional[int] = None
    thinking_budget: Optional[int] = None
    tools: Dict[str, bool] = field(default_factory=dict)
    api_key: Optional[str] = None
    include_media: bool = True

    @classmethod
    def from_conversation(cls, conversation: Conversation, *, api_key: Optional[str] = None) -> "SessionConfig":
        return cls(
            model_name=conversation.model_name,
            system_instruction=conversation.system_instruction,
            temperature=conversation.temperature,
            top_p=conversation.top_p,
            top_k=conversation.top_k,
            max_output_tokens=conversation.max_output_tokens,
            thinking_budget=conversation.thinking_budget,
            tools={
                "google_search": conversation.google_search_enabled,
                "code_execution": conversation.code_execution_enabled,
                "url_context": conversation.url_context_enabled,
                "image_generation": conversation.image_generation_enabled,
                "video_generation": conversation.video_generation_enabled,
            },
            api_key=api_key,
        )

    def resolve_api_key(self) -> Optional[str]:
        if self.api_key:
            return self.api_key
        return get_env_api_key(provider_for_model(self.model_name))

    def completion_options(self, signal: Optional[asyncio.Event] = None) -> CompletionOptions:
        return CompletionOptions(
            model_name=self.model_name,
            system_instruction=self.system_instruction,
            api_key=self.resolve_api_key(),
            temperature=self.temperature,
            top_p=self.top_p,
            top_k=self.top_k,
            max_output_tokens=self.max_output_tokens,
            thinking_budget=self.thinking_budget,
            tools=dict(self.tools) or None,
            signal=signal,
        )
