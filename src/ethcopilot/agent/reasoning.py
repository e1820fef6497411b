import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Protocol, Sequence

import openai
from openai import AsyncOpenAI

from ..errors import ReasoningError
from ..knowledge.index import Passage
from ..models import Role, Turn
from ..settings import get_settings

logger = logging.getLogger(__name__)

PASSAGE_PREVIEW_CHARS = 1500


@dataclass(frozen=True)
class TextResult:
    """The model answered in natural language."""

    text: str


@dataclass(frozen=True)
class ToolCallRequest:
    """The model asked for exactly one tool call. ``raw_args`` is unvalidated."""

    name: str
    raw_args: Dict[str, Any] | str
    call_id: str | None = None


ReasoningResult = TextResult | ToolCallRequest


class Reasoner(Protocol):
    async def complete(
        self,
        system_prompt: str,
        turns: Sequence[Turn],
        passages: Sequence[Passage],
        tool_schema: List[Dict[str, Any]],
    ) -> ReasoningResult: ...


def render_passages(passages: Sequence[Passage]) -> str:
    parts: List[str] = []
    for i, p in enumerate(passages, 1):
        text = p.text if len(p.text) <= PASSAGE_PREVIEW_CHARS else p.text[:PASSAGE_PREVIEW_CHARS] + "..."
        parts.append(f"[{i}] {p.title or p.passage_id} ({p.source}@{p.offset})\n{text}")
    return "\n\n".join(parts)


def _answered_call_ids(turns: Sequence[Turn]) -> set:
    return {
        t.content.get("call_id")
        for t in turns
        if t.role is Role.TOOL_RESULT and isinstance(t.content, dict)
    }


def turns_to_messages(turns: Sequence[Turn]) -> List[Dict[str, Any]]:
    """Convert session turns to chat messages.

    A tool request that never produced a result (it failed validation) is shown
    as plain assistant text, because the chat API rejects tool calls that are
    not followed by a tool message.
    """
    answered = _answered_call_ids(turns)
    messages: List[Dict[str, Any]] = []
    for turn in turns:
        content = turn.content
        if turn.role is Role.USER:
            messages.append({"role": "user", "content": str(content)})
        elif turn.role is Role.ASSISTANT and isinstance(content, dict):
            call = content["tool_call"]
            arguments = call["arguments"]
            if not isinstance(arguments, str):
                arguments = json.dumps(arguments)
            if call.get("call_id") in answered:
                messages.append(
                    {
                        "role": "assistant",
                        "content": None,
                        "tool_calls": [
                            {
                                "id": call["call_id"],
                                "type": "function",
                                "function": {"name": call["name"], "arguments": arguments},
                            }
                        ],
                    }
                )
            else:
                messages.append(
                    {"role": "assistant", "content": f"(requested {call['name']} with {arguments})"}
                )
        elif turn.role is Role.ASSISTANT:
            messages.append({"role": "assistant", "content": str(content)})
        elif turn.role is Role.TOOL_RESULT and isinstance(content, dict):
            messages.append(
                {
                    "role": "tool",
                    "tool_call_id": content.get("call_id"),
                    "content": json.dumps(
                        {k: v for k, v in content.items() if k != "call_id"}, default=str
                    ),
                }
            )
    return messages


def trim_history(turns: Sequence[Turn], window: int) -> List[Turn]:
    """Keep at most ``window`` turns, cutting only at a user turn."""
    if len(turns) <= window:
        return list(turns)
    user_indices = [i for i, t in enumerate(turns) if t.role is Role.USER]
    for idx in user_indices:
        if len(turns) - idx <= window:
            return list(turns[idx:])
    return list(turns[user_indices[-1]:]) if user_indices else list(turns[-window:])


class OpenAIReasoner:
    """Reasoning capability backed by the OpenAI chat completions API with tools."""

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str,
        temperature: float = 0.0,
        history_window: int = 40,
    ) -> None:
        self._client = client
        self._model = model
        self._temperature = temperature
        self._history_window = history_window

    async def complete(
        self,
        system_prompt: str,
        turns: Sequence[Turn],
        passages: Sequence[Passage],
        tool_schema: List[Dict[str, Any]],
    ) -> ReasoningResult:
        """Ask the model for the next step.

        Args:
            system_prompt: Instructions, known accounts and notes for this turn.
            turns: Session history; trimmed to the history window at a user turn.
            passages: Retrieved passages appended to the system prompt.
            tool_schema: OpenAI function tools the model may call.

        Returns:
            ReasoningResult: TextResult, or ToolCallRequest for the first tool call.

        Raises:
            ReasoningError: The API failed; ``transient`` is set for timeouts and rate limits.
        """
        system_parts = [system_prompt]
        if passages:
            system_parts.append("\n Knowledge Base Passages\n" + render_passages(passages))
        messages: List[Dict[str, Any]] = [{"role": "system", "content": "\n".join(system_parts)}]
        messages.extend(turns_to_messages(trim_history(turns, self._history_window)))

        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=messages,
                tools=tool_schema or openai.NOT_GIVEN,
                tool_choice="auto" if tool_schema else openai.NOT_GIVEN,
                temperature=self._temperature,
            )
        except (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError) as e:
            # APITimeoutError is an APIConnectionError.
            raise ReasoningError(f"Model unavailable: {e}", transient=True) from e
        except openai.OpenAIError as e:
            raise ReasoningError(f"Model request failed: {e}") from e

        try:
            message = response.choices[0].message
        except (AttributeError, IndexError) as e:
            raise ReasoningError(f"Malformed model response: {e}") from e

        tool_calls = message.tool_calls or []
        if tool_calls:
            if len(tool_calls) > 1:
                logger.warning(
                    "Model requested %d tool calls; dispatching only %s",
                    len(tool_calls),
                    tool_calls[0].function.name,
                )
            call = tool_calls[0]
            raw = call.function.arguments or ""
            try:
                raw_args: Dict[str, Any] | str = json.loads(raw) if raw.strip() else {}
            except json.JSONDecodeError:
                raw_args = raw
            return ToolCallRequest(name=call.function.name, raw_args=raw_args, call_id=call.id)

        if not message.content:
            raise ReasoningError("Model returned neither text nor a tool call")
        return TextResult(text=message.content)


def get_reasoner() -> OpenAIReasoner:
    settings = get_settings()
    client = AsyncOpenAI(
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
        timeout=settings.reasoning_timeout_seconds,
    )
    return OpenAIReasoner(client, settings.model, settings.temperature)
