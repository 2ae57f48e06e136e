from __future__ import annotations

import base64
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

import httpx

from .app_logging import log_with_fields
from .config import LLMClientConfig


class Engine(str, Enum):
    OLLAMA = "ollama"
    DIGITALOCEAN = "digitalocean"


class BackendError(RuntimeError):
    pass


class BackendConfigError(ValueError):
    pass


def _usage(prompt_tokens: int = 0, completion_tokens: int = 0) -> dict[str, int]:
    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": prompt_tokens + completion_tokens,
    }


def _auth_headers(config: LLMClientConfig) -> dict[str, str]:
    if config.auth is None:
        return {}
    if config.auth.bearer:
        return {"Authorization": f"Bearer {config.auth.bearer}"}
    if config.auth.basic:
        token = config.auth.basic
        if ":" in token:
            token = base64.b64encode(token.encode("utf-8")).decode("ascii")
        return {"Authorization": f"Basic {token}"}
    return {}


class LLMClient(ABC):
    """Common chat/generate/embed surface shared by every engine."""

    engine: Engine

    def __init__(
        self,
        config: LLMClientConfig,
        logger: logging.Logger,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.logger = logger
        self.timeout_ms = config.timeout
        headers = {"Content-Type": "application/json", **_auth_headers(config), **config.headers}
        self.http = httpx.AsyncClient(
            base_url=config.base_url,
            headers=headers,
            timeout=config.timeout / 1000,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self.http.aclose()

    async def _post(self, endpoint: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self.http.post(endpoint, json=body)
        except httpx.TimeoutException as exc:
            raise BackendError(f"Request timeout after {self.timeout_ms}ms") from exc
        except httpx.HTTPError as exc:
            raise BackendError(f"{self.engine.value} request to {endpoint} failed: {exc}") from exc

        if response.is_error:
            message = self._error_message(response)
            log_with_fields(
                self.logger,
                logging.ERROR,
                "backend_request_failed",
                engine=self.engine.value,
                endpoint=endpoint,
                status=response.status_code,
                error=message,
            )
            raise BackendError(message)

        try:
            data = response.json()
        except ValueError as exc:
            raise BackendError(f"{self.engine.value} returned invalid JSON from {endpoint}") from exc
        if not isinstance(data, dict):
            raise BackendError(f"{self.engine.value} returned unexpected body from {endpoint}")
        return data

    def _error_message(self, response: httpx.Response) -> str:
        return f"HTTP {response.status_code}: {response.reason_phrase}"

    @staticmethod
    def _messages(request: dict[str, Any]) -> list[dict[str, str]]:
        messages = request.get("messages", [])
        if not isinstance(messages, list) or not all(
            isinstance(item, dict) and "role" in item and "content" in item for item in messages
        ):
            raise BackendError("chat requests need `messages` as a list of {role, content} objects")
        return [{"role": str(item["role"]), "content": str(item["content"])} for item in messages]

    @staticmethod
    def _number(request: dict[str, Any], name: str, kind: type = float) -> Any:
        value = request[name]
        if isinstance(value, bool):
            raise BackendError(f"`{name}` must be a number")
        try:
            return kind(value)
        except (TypeError, ValueError) as exc:
            raise BackendError(f"`{name}` must be a number") from exc

    def _model(self, request: dict[str, Any]) -> str | None:
        return request.get("model") or self.config.model

    @staticmethod
    def normalize_numeric_parameter(value: float) -> float:
        return min(max(float(value), 0.0), 1.0)

    @abstractmethod
    async def chat(self, request: dict[str, Any]) -> dict[str, Any]:
        ...

    @abstractmethod
    async def generate(self, request: dict[str, Any]) -> dict[str, Any]:
        ...

    async def embed(self, request: dict[str, Any]) -> dict[str, Any]:
        raise BackendError(f"Embedding not supported by {type(self).__name__}")


class OllamaClient(LLMClient):
    engine = Engine.OLLAMA

    def _error_message(self, response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("error"):
            return str(body["error"])
        return super()._error_message(response)

    def _options(self, request: dict[str, Any]) -> dict[str, Any]:
        options: dict[str, Any] = {}
        for name in ("temperature", "top_p"):
            if request.get(name) is not None:
                options[name] = self.normalize_numeric_parameter(self._number(request, name))
        if request.get("top_k") is not None:
            options["top_k"] = self._number(request, "top_k", int)
        if request.get("max_tokens") is not None:
            options["num_predict"] = self._number(request, "max_tokens", int)
        return options

    def _base_body(self, request: dict[str, Any]) -> dict[str, Any]:
        model = self._model(request)
        if not model:
            raise BackendError("ollama requests need a model")
        body: dict[str, Any] = {"model": model, "stream": False}
        options = self._options(request)
        if options:
            body["options"] = options
        if request.get("format") is not None:
            body["format"] = request["format"]
        return body

    async def chat(self, request: dict[str, Any]) -> dict[str, Any]:
        body = self._base_body(request)
        body["messages"] = self._messages(request)
        data = await self._post("/api/chat", body)
        message = data.get("message") or {}
        return {
            "content": str(message.get("content", "")),
            "finish_reason": data.get("done_reason") or "stop",
            "usage": _usage(int(data.get("prompt_eval_count") or 0), int(data.get("eval_count") or 0)),
        }

    async def generate(self, request: dict[str, Any]) -> dict[str, Any]:
        if not request.get("prompt"):
            raise BackendError("generate requests need a prompt")
        body = self._base_body(request)
        body["prompt"] = str(request["prompt"])
        for name in ("system", "suffix"):
            if request.get(name):
                body[name] = str(request[name])
        data = await self._post("/api/generate", body)
        return {
            "content": str(data.get("response", "")),
            "finish_reason": data.get("done_reason") or "stop",
            "usage": _usage(int(data.get("prompt_eval_count") or 0), int(data.get("eval_count") or 0)),
        }

    async def embed(self, request: dict[str, Any]) -> dict[str, Any]:
        if request.get("input") is None:
            raise BackendError("embed requests need an input")
        model = self._model(request)
        if not model:
            raise BackendError("ollama requests need a model")
        body: dict[str, Any] = {"model": model, "input": request["input"]}
        if request.get("truncate") is not None:
            body["truncate"] = bool(request["truncate"])
        data = await self._post("/api/embed", body)
        return {
            "embeddings": data.get("embeddings", []),
            "usage": _usage(int(data.get("prompt_eval_count") or 0)),
        }


class DigitalOceanAIClient(LLMClient):
    engine = Engine.DIGITALOCEAN

    def __init__(
        self,
        config: LLMClientConfig,
        logger: logging.Logger,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if config.auth is None or not config.auth.bearer:
            raise BackendConfigError("digitalocean engine requires `auth.bearer`")
        super().__init__(config, logger, transport=transport)

    async def chat(self, request: dict[str, Any]) -> dict[str, Any]:
        body: dict[str, Any] = {
            "messages": self._messages(request),
            "stream": False,
        }
        for name in ("temperature", "top_p", "max_tokens"):
            if request.get(name) is not None:
                body[name] = self._number(request, name, int if name == "max_tokens" else float)
        data = await self._post("/api/v1/chat/completions", body)

        choices = data.get("choices") or []
        if not choices:
            raise BackendError("No choices returned from Digital Ocean AI API")
        message = choices[0].get("message") or {}
        usage = data.get("usage") or {}
        return {
            "content": str(message.get("content", "")),
            "finish_reason": choices[0].get("finish_reason") or "stop",
            "usage": _usage(int(usage.get("prompt_tokens") or 0), int(usage.get("completion_tokens") or 0)),
        }

    async def generate(self, request: dict[str, Any]) -> dict[str, Any]:
        if not request.get("prompt"):
            raise BackendError("generate requests need a prompt")
        messages = []
        if request.get("system"):
            messages.append({"role": "system", "content": str(request["system"])})
        messages.append({"role": "user", "content": str(request["prompt"])})
        chat_request: dict[str, Any] = {"messages": messages}
        for name in ("temperature", "top_p", "max_tokens"):
            if request.get(name) is not None:
                chat_request[name] = request[name]
        return await self.chat(chat_request)


CLIENT_TYPES: dict[Engine, type[LLMClient]] = {
    Engine.OLLAMA: OllamaClient,
    Engine.DIGITALOCEAN: DigitalOceanAIClient,
}


def create_client(
    config: LLMClientConfig,
    logger: logging.Logger,
    transport: httpx.AsyncBaseTransport | None = None,
) -> LLMClient:
    try:
        engine = Engine(config.engine)
    except ValueError as exc:
        raise BackendConfigError(f"Unknown LLM engine: {config.engine}") from exc
    return CLIENT_TYPES[engine](config, logger, transport=transport)


def build_clients(configs: dict[str, LLMClientConfig], logger: logging.Logger) -> dict[str, LLMClient]:
    clients: dict[str, LLMClient] = {}
    for name, config in configs.items():
        try:
            clients[name] = create_client(config, logger)
        except BackendConfigError as exc:
            log_with_fields(logger, logging.ERROR, "backend_config_error", client=name, error=str(exc))
    return clients
