"""Convert kiro-cli history entries into canonical stream messages.

A kiro history entry is one turn of the stored conversation:

    {"user": {"content": {"Prompt": {...}} | {"ToolUseResults": {...}}},
     "assistant": {"ToolUse": {...}} | {"Response": {...}},
     "request_metadata": {...}}

Everything here is pure: no I/O, no state kept between calls, and malformed
content degrades to text instead of raising.
"""

from __future__ import annotations

import json
import uuid
from typing import Any

MODEL_KEYS = ("model", "model_id", "selected_model", "selectedModel", "modelName", "default_model")
NESTED_MODEL_CONTAINERS = ("default_params", "request", "options", "config")
NESTED_MODEL_KEYS = ("model", "model_id", "selected_model")


def _pick_model(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def extract_model_from_metadata(metadata: Any) -> str | None:
    """Find a model id in request metadata.

    Top-level keys win over the nested parameter/config containers, which are
    only searched one level deep.
    """
    if not isinstance(metadata, dict):
        return None
    for key in MODEL_KEYS:
        model = _pick_model(metadata.get(key))
        if model:
            return model
    for container in NESTED_MODEL_CONTAINERS:
        nested = metadata.get(container)
        if not isinstance(nested, dict):
            continue
        for key in NESTED_MODEL_KEYS:
            model = _pick_model(nested.get(key))
            if model:
                return model
    return None


# ── Content normalization ────────────────────────────────────────


def _text_block(text: str) -> dict[str, Any]:
    return {"type": "text", "text": text}


def _json_fallback(value: Any, *, indent: int | None = 2) -> str:
    try:
        return json.dumps(value, indent=indent, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return repr(value)


def _is_command_output(value: Any) -> bool:
    return isinstance(value, dict) and ("stdout" in value or "stderr" in value)


def _is_text_object(value: Any) -> bool:
    return isinstance(value, dict) and "Text" in value


def _list_item_text(item: Any) -> str | None:
    if not item:
        return None
    if isinstance(item, str):
        return item
    if isinstance(item, dict):
        for key in ("Text", "text"):
            if isinstance(item.get(key), str):
                return item[key]
        if "Json" in item:
            return _json_fallback(item["Json"])
    return _json_fallback(item, indent=None)


def _command_output_blocks(value: dict[str, Any]) -> list[dict[str, Any]]:
    blocks = []
    stdout = value.get("stdout")
    stderr = value.get("stderr")
    if isinstance(stdout, str) and stdout.strip():
        blocks.append(_text_block(f"Stdout:\n{stdout}"))
    if isinstance(stderr, str) and stderr.strip():
        blocks.append(_text_block(f"Stderr:\n{stderr}"))
    return blocks


def normalize_text_blocks(value: Any) -> list[dict[str, Any]]:
    """Render an arbitrary raw payload as a non-empty list of text blocks."""
    if isinstance(value, str):
        return [_text_block(value)]

    if isinstance(value, list):
        texts = [t for t in (_list_item_text(item) for item in value) if t is not None]
        if texts:
            return [_text_block(t) for t in texts]

    elif _is_command_output(value):
        blocks = _command_output_blocks(value)
        if blocks:
            return blocks

    elif _is_text_object(value):
        return [_text_block(str(value["Text"]))]

    return [_text_block(_json_fallback(value))]


# ── Message builders ─────────────────────────────────────────────


class _MessageIds:
    """Canonical id allocation scoped to one conversion call."""

    def __init__(self) -> None:
        self._issued: set[str] = set()

    def allocate(self, source_id: Any = None, index: int = 0) -> str:
        if isinstance(source_id, str) and source_id.strip():
            candidate = source_id if index == 0 else f"{source_id}:{index}"
            if candidate not in self._issued:
                self._issued.add(candidate)
                return candidate
        fresh = str(uuid.uuid4())
        self._issued.add(fresh)
        return fresh


def _assistant_message(msg_id: str, conversation_id: str, content: list[dict[str, Any]]) -> dict[str, Any]:
    return {
        "type": "assistant",
        "uuid": msg_id,
        "session_id": conversation_id,
        "parent_tool_use_id": None,
        "message": {"id": msg_id, "role": "assistant", "content": content},
    }


def _tool_result_message(msg_id: str, conversation_id: str, result: dict[str, Any]) -> dict[str, Any]:
    status = result.get("status")
    is_error = isinstance(status, str) and status.lower() == "error"
    tool_use_id = result.get("tool_use_id") or str(uuid.uuid4())
    return {
        "type": "user",
        "uuid": msg_id,
        "session_id": conversation_id,
        "parent_tool_use_id": None,
        "message": {
            "id": msg_id,
            "role": "user",
            "content": [
                {
                    "type": "tool_result",
                    "tool_use_id": tool_use_id,
                    "content": normalize_text_blocks(result.get("content")),
                    "is_error": is_error,
                }
            ],
        },
    }


def _tool_use_blocks(tool_uses: list[Any]) -> list[dict[str, Any]]:
    blocks = []
    for tool in tool_uses:
        if not isinstance(tool, dict):
            continue
        args = tool.get("args")
        if not isinstance(args, dict):
            args = tool.get("orig_args")
        blocks.append({
            "type": "tool_use",
            "id": tool.get("id") or str(uuid.uuid4()),
            "name": tool.get("name") or tool.get("orig_name") or "tool",
            "input": args if isinstance(args, dict) else {},
        })
    return blocks


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def convert_history_entries(
    entries: list[Any],
    conversation_id: str,
    *,
    fallback_model: str | None = None,
) -> list[dict[str, Any]]:
    """Convert raw kiro history entries into canonical messages, in order."""
    messages: list[dict[str, Any]] = []
    ids = _MessageIds()
    fallback = _pick_model(fallback_model)

    for entry in entries:
        entry = _as_dict(entry)
        user_content = _as_dict(_as_dict(entry.get("user")).get("content"))
        assistant = _as_dict(entry.get("assistant"))
        metadata = _as_dict(entry.get("request_metadata"))
        metadata_message_id = metadata.get("message_id")
        model = extract_model_from_metadata(metadata) or fallback

        prompt = _as_dict(user_content.get("Prompt")).get("prompt")
        if isinstance(prompt, str) and prompt.strip():
            messages.append({
                "type": "user_prompt",
                "prompt": prompt,
                "uuid": ids.allocate(metadata_message_id),
            })

        results = _as_dict(user_content.get("ToolUseResults")).get("tool_use_results")
        if isinstance(results, list):
            results = [r for r in results if isinstance(r, dict)]
            for index, result in enumerate(results):
                msg_id = ids.allocate(metadata_message_id, index)
                messages.append(_tool_result_message(msg_id, conversation_id, result))

        tool_use_message: dict[str, Any] | None = None
        tool_use = _as_dict(assistant.get("ToolUse"))
        tool_uses = tool_use.get("tool_uses")
        if isinstance(tool_uses, list) and tool_uses:
            blocks = _tool_use_blocks(tool_uses)
            if blocks:
                tool_use_message = _assistant_message(ids.allocate(tool_use.get("message_id")), conversation_id, blocks)
                if model:
                    tool_use_message["model"] = model
                messages.append(tool_use_message)

        response = _as_dict(assistant.get("Response"))
        if response.get("content"):
            response_message = _assistant_message(
                ids.allocate(response.get("message_id")),
                conversation_id,
                normalize_text_blocks(response["content"]),
            )
            response_message["message"]["transcript"] = normalize_text_blocks(response["content"])
            if model:
                response_message["model"] = model
            messages.append(response_message)
            # invocation and reply of the same entry form one logical turn
            if tool_use_message is not None:
                tool_use_message["message"]["transcript"] = normalize_text_blocks(response["content"])

    return messages
