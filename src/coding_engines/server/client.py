"""HTTP client for the agent server session API."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT_SECONDS = 10.0
MODEL_LIST_TIMEOUT_SECONDS = 5.0


@dataclass(slots=True)
class SessionReply:
    """Assistant reply to one session message."""

    parts: list[dict[str, Any]] = field(default_factory=list)
    info: dict[str, Any] = field(default_factory=dict)


class OpencodeClient:
    """Thin wrapper over ``httpx.Client`` for session create/message/abort.

    Transport errors propagate as ``httpx.HTTPError``; callers turn them into
    typed results.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self._base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=DEFAULT_CONNECT_TIMEOUT_SECONDS),
            headers={"Accept": "application/json"},
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    def create_session(self, directory: Path) -> str:
        response = self._client.post("/session", params={"directory": str(directory)}, json={})
        response.raise_for_status()
        return str(_json_object(response)["id"])

    def send_message(
        self,
        session_id: str,
        *,
        text: str,
        model: str,
        directory: Path,
        tools: dict[str, bool] | None = None,
    ) -> SessionReply:
        body: dict[str, Any] = {"parts": [{"type": "text", "text": text}]}
        provider_id, _, model_id = model.partition("/")
        if model_id:
            body["model"] = {"providerID": provider_id, "modelID": model_id}
        if tools:
            body["tools"] = tools
        response = self._client.post(
            f"/session/{session_id}/message",
            params={"directory": str(directory)},
            json=body,
        )
        response.raise_for_status()
        payload = _json_object(response)
        parts = payload.get("parts") or []
        if not isinstance(parts, list):
            raise ValueError(f"Expected a list of message parts, got {type(parts).__name__}")
        info = payload.get("info")
        return SessionReply(parts=parts, info=info if isinstance(info, dict) else {})

    def abort_session(self, session_id: str) -> None:
        """Best-effort abort; a failure only means the session ends on its own."""

        try:
            self._client.post(f"/session/{session_id}/abort", timeout=MODEL_LIST_TIMEOUT_SECONDS)
        except httpx.HTTPError as exc:
            logger.warning("Failed to abort session %s: %s", session_id, exc)

    def list_models(self) -> list[str]:
        """Models advertised by the server, normalized to ``provider/model``."""

        for path in ("/config/providers", "/provider"):
            try:
                response = self._client.get(path, timeout=MODEL_LIST_TIMEOUT_SECONDS)
            except httpx.HTTPError as exc:
                logger.warning("Error fetching models from %s%s: %s", self._base_url, path, exc)
                continue
            if not response.is_success:
                continue
            models = parse_provider_models(response.json())
            if models:
                return models
        return []

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> OpencodeClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def parse_provider_models(data: Any) -> list[str]:
    """Extract unique ``provider/model`` ids from a providers listing."""

    if isinstance(data, list):
        providers = data
    elif isinstance(data, dict):
        providers = data.get("providers") or data.get("all") or []
    else:
        return []

    models: list[str] = []
    for provider in providers:
        if not isinstance(provider, dict):
            continue
        raw_models = provider.get("models")
        if isinstance(raw_models, dict):
            entries = list(raw_models.values())
        elif isinstance(raw_models, list):
            entries = raw_models
        else:
            continue
        for entry in entries:
            model_id = entry if isinstance(entry, str) else _entry_id(entry)
            if not model_id:
                continue
            normalized = _normalize_model_name(str(model_id), provider.get("id"))
            if normalized not in models:
                models.append(normalized)
    return models


def _entry_id(entry: Any) -> str | None:
    if isinstance(entry, dict) and entry.get("id"):
        return str(entry["id"])
    return None


def _normalize_model_name(model: str, provider: str | None) -> str:
    if "/" in model or not provider:
        return model
    return f"{provider}/{model}"


def _json_object(response: httpx.Response) -> dict[str, Any]:
    payload = response.json()
    if not isinstance(payload, dict):
        kind = type(payload).__name__
        raise ValueError(f"Expected a JSON object from {response.url.path}, got {kind}")
    return payload
