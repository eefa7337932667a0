"""HTTP client for an Open WebUI compatible chat server."""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from pathlib import Path
from typing import Any

import httpx

from outbox.errors import ApiResponseError
from outbox.state import ChatMessage, Conversation

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Chat"

_FENCE = re.compile(r"```.*?```", re.DOTALL)
_QUOTES = re.compile(r'^[{"]|["}]$')


def _timestamp(raw: Any) -> float:
    """Server timestamps are epoch seconds, occasionally milliseconds."""
    if isinstance(raw, (int, float)):
        return raw / 1000 if raw > 1e11 else float(raw)
    return time.time()


def parse_message(data: dict[str, Any]) -> ChatMessage:
    files = data.get("files")
    return ChatMessage(
        id=str(data.get("id", "")),
        role=str(data.get("role", "user")),
        content=str(data.get("content") or ""),
        timestamp=_timestamp(data.get("timestamp")),
        model=data.get("model"),
        files=files if isinstance(files, list) and files else None,
    )


def parse_conversation(data: dict[str, Any]) -> Conversation:
    """
    Build a Conversation from a chat response.

    Messages come from ``chat.messages`` when present, else from the
    ``chat.history.messages`` map, else from a top-level ``messages`` list.
    """
    chat = data.get("chat") if isinstance(data.get("chat"), dict) else None

    model = None
    raw_messages: list[dict[str, Any]] = []
    if chat is not None:
        models = chat.get("models") or []
        if models:
            model = str(models[0])
        if isinstance(chat.get("messages"), list):
            raw_messages = chat["messages"]
        else:
            history = chat.get("history") or {}
            mapping = history.get("messages") or {}
            raw_messages = [{**value, "id": key} for key, value in mapping.items()]
    elif isinstance(data.get("messages"), list):
        raw_messages = data["messages"]

    messages = []
    for item in raw_messages:
        if not isinstance(item, dict):
            continue
        messages.append(parse_message(item))

    return Conversation(
        id=str(data["id"]),
        title=str(data.get("title") or (chat or {}).get("title") or DEFAULT_TITLE),
        messages=messages,
        model=model,
        created_at=_timestamp(data.get("created_at")),
        updated_at=_timestamp(data.get("updated_at")),
    )


def _message_payload(
    message: ChatMessage, parent_id: str | None, model: str | None
) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "id": message.id,
        "parentId": parent_id,
        "childrenIds": [],
        "role": message.role,
        "content": message.content,
        "timestamp": int(message.timestamp),
    }
    if message.role == "assistant":
        if message.model:
            entry["model"] = message.model
            entry["modelName"] = message.model
        entry["modelIdx"] = 0
        entry["done"] = True
    if message.role == "user" and model:
        entry["models"] = [model]
    if message.attachment_ids:
        entry["files"] = [{"file_id": file_id} for file_id in message.attachment_ids]
    if message.files:
        entry["files"] = message.files
    return entry


def build_chat_payload(
    messages: list[ChatMessage],
    *,
    title: str | None = None,
    model: str | None = None,
) -> dict[str, Any]:
    """
    Serialize messages into the server's chat document.

    The document carries both a flat ``messages`` list and a
    ``history.messages`` map linked through parentId/childrenIds.
    """
    history: dict[str, dict[str, Any]] = {}
    flat: list[dict[str, Any]] = []
    previous_id: str | None = None

    for message in messages:
        history[message.id] = _message_payload(message, previous_id, model)
        if previous_id is not None and previous_id in history:
            history[previous_id]["childrenIds"].append(message.id)
        flat.append(_message_payload(message, previous_id, model))
        previous_id = message.id

    chat: dict[str, Any] = {
        "models": [model] if model else [],
        "messages": flat,
        "history": {"messages": history},
        "params": {},
        "files": [],
    }
    if title is not None:
        chat["title"] = title
    if previous_id is not None:
        chat["history"]["currentId"] = previous_id
    return {"chat": chat}


def extract_title(data: Any) -> str | None:
    """
    Pull a title out of a title-completion response.

    Accepts a direct ``title`` field or an OpenAI-style completion whose
    content is JSON, JSON in a ```json fence, or plain text.
    """
    if not isinstance(data, dict):
        return None

    title: str | None = None
    if "title" in data:
        title = None if data["title"] is None else str(data["title"])
    elif isinstance(data.get("choices"), list) and data["choices"]:
        first = data["choices"][0]
        message = first.get("message") if isinstance(first, dict) else None
        if isinstance(message, dict):
            content = str(message.get("content") or "")
            title = _title_from_content(content)

    if not title:
        return None
    title = _FENCE.sub("", title).strip()
    title = _QUOTES.sub("", title).strip()
    if not title or title == DEFAULT_TITLE:
        return None
    return title


def _title_from_content(content: str) -> str | None:
    if "```json" in content:
        start = content.index("```json") + len("```json")
        end = content.rfind("```")
        if end <= start:
            return None
        try:
            parsed = json.loads(content[start:end].strip())
        except ValueError as e:
            logger.debug("Title response fence is not JSON: %s", e)
            return None
        return str(parsed.get("title")) if isinstance(parsed, dict) and parsed.get("title") else None

    try:
        parsed = json.loads(content)
    except ValueError:
        return content
    if isinstance(parsed, dict):
        return str(parsed["title"]) if parsed.get("title") else None
    return content


class OpenWebUIClient:
    """
    Async client for the chat server's REST API.

    Implements the ChatApi capabilities the worker consumes, plus the
    chat completion call used by ChatPipeline.

    Example:
        async with OpenWebUIClient("https://chat.example.com", token=token) as client:
            conversation = await client.get_conversation("abc")
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> OpenWebUIClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        resp = await self._client.request(method, url, **kwargs)
        resp.raise_for_status()
        if not resp.content:
            return None
        return resp.json()

    # --- Conversations ---

    async def get_conversation(self, conversation_id: str) -> Conversation:
        data = await self._request("GET", f"/api/v1/chats/{conversation_id}")
        if not isinstance(data, dict) or "id" not in data:
            raise ApiResponseError(f"Unexpected chat response for {conversation_id}")
        return parse_conversation(data)

    async def create_conversation(
        self,
        *,
        title: str = DEFAULT_TITLE,
        messages: list[ChatMessage] | None = None,
        model: str | None = None,
    ) -> Conversation:
        payload = build_chat_payload(messages or [], title=title, model=model)
        data = await self._request("POST", "/api/v1/chats/new", json=payload)
        if not isinstance(data, dict) or "id" not in data:
            raise ApiResponseError("Server did not return the new chat")
        return parse_conversation(data)

    async def update_conversation_with_messages(
        self,
        conversation_id: str,
        messages: list[ChatMessage],
        *,
        title: str | None = None,
        model: str | None = None,
    ) -> None:
        logger.debug("Pushing %d messages to %s", len(messages), conversation_id)
        payload = build_chat_payload(messages, title=title, model=model)
        await self._request("POST", f"/api/v1/chats/{conversation_id}", json=payload)

    # --- Files ---

    async def upload_file(self, file_path: str, file_name: str) -> str:
        """
        Upload a local file.

        Returns:
            The server-assigned file id.

        Raises:
            FileNotFoundError: If the local file does not exist.
            ApiResponseError: If the response carries no id.
        """
        path = Path(file_path)
        if not path.is_file():
            raise FileNotFoundError(f"File not found: {file_path}")

        # Disk reads stay off the event loop
        content = await asyncio.to_thread(path.read_bytes)
        data = await self._request(
            "POST", "/api/v1/files/", files={"file": (file_name, content)}
        )
        if not isinstance(data, dict) or not data.get("id"):
            raise ApiResponseError(f"Upload of {file_name} returned no file id")
        return str(data["id"])

    # --- Tools, images, titles ---

    async def get_available_tools(self) -> list[dict[str, Any]]:
        data = await self._request("GET", "/api/v1/tools/")
        if not isinstance(data, list):
            return []
        return [tool for tool in data if isinstance(tool, dict)]

    async def generate_image(self, prompt: str, model: str | None = None) -> Any:
        payload: dict[str, Any] = {"prompt": prompt}
        if model:
            payload["model"] = model
        return await self._request("POST", "/api/v1/images/generations", json=payload)

    async def generate_title(
        self,
        conversation_id: str,
        messages: list[dict[str, Any]],
        model: str,
    ) -> str | None:
        """Ask the server for a title. Returns None when it has none to offer."""
        try:
            data = await self._request(
                "POST",
                "/api/v1/tasks/title/completions",
                json={"chat_id": conversation_id, "messages": messages, "model": model},
            )
        except httpx.HTTPError as e:
            logger.debug("Title generation failed for %s: %s", conversation_id, e)
            return None
        return extract_title(data)

    # --- Completions ---

    async def chat_completion(
        self,
        model: str,
        messages: list[ChatMessage],
        *,
        chat_id: str | None = None,
        tool_ids: list[str] | None = None,
        files: list[dict[str, Any]] | None = None,
        image_generation: bool = False,
    ) -> str:
        """Run a non-streaming completion and return the assistant text."""
        payload: dict[str, Any] = {
            "model": model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "stream": False,
            "features": {"image_generation": image_generation},
        }
        if chat_id:
            payload["chat_id"] = chat_id
        if tool_ids:
            payload["tool_ids"] = tool_ids
        if files:
            payload["files"] = files

        data = await self._request("POST", "/api/chat/completions", json=payload)
        try:
            return str(data["choices"][0]["message"]["content"] or "")
        except (KeyError, IndexError, TypeError):
            raise ApiResponseError("Completion response has no message content") from None
