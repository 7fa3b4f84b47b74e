# llm.py
# Chat collaborator. Wraps the OpenAI SDK pointed at OpenRouter (or any
# OpenAI-compatible endpoint) and walks an ordered list of model candidates
# until one answers.

import httpx
from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel, Field

from edit_pipeline import config, display
from edit_pipeline.errors import ChatError


class ModelCandidate(BaseModel):
    model: str
    api_key: str | None = None
    base_url: str = config.OPENROUTER_BASE_URL


class ChatReply(BaseModel):
    content: str
    model: str
    usage: dict = Field(default_factory=dict)


def candidates_from_env() -> list[ModelCandidate]:
    """Resolve the configured fallback list once, in priority order."""
    return [
        ModelCandidate(model=model, api_key=config.OPENROUTER_API_KEY)
        for model in config.MODELS
    ]


class ChatClient:
    """
    Ordered-fallback chat client.

    Example:
        client = ChatClient(candidates_from_env())
        reply = await client.chat([{"role": "user", "content": "hi"}])
    """

    def __init__(self, candidates: list[ModelCandidate], timeout: float = config.LLM_TIMEOUT_SECONDS) -> None:
        if not candidates:
            raise ValueError("ChatClient needs at least one model candidate.")
        self._candidates = list(candidates)
        self._timeout = timeout
        self._clients: dict[tuple[str, str | None], AsyncOpenAI] = {}

    @property
    def candidates(self) -> list[ModelCandidate]:
        return list(self._candidates)

    def _client_for(self, candidate: ModelCandidate) -> AsyncOpenAI:
        key = (candidate.base_url, candidate.api_key)
        if key not in self._clients:
            self._clients[key] = AsyncOpenAI(
                base_url=candidate.base_url,
                api_key=candidate.api_key,
                http_client=httpx.AsyncClient(timeout=httpx.Timeout(self._timeout)),
            )
        return self._clients[key]

    async def chat(self, messages: list[dict], **opts) -> ChatReply:
        failures: list[str] = []
        for candidate in self._candidates:
            try:
                client = self._client_for(candidate)
                response = await client.chat.completions.create(
                    model=candidate.model,
                    messages=messages,
                    **opts,
                )
            except OpenAIError as exc:
                failures.append(f"{candidate.model}: {exc}")
                display.model_fallback(candidate.model, str(exc))
                continue

            content = response.choices[0].message.content or ""
            usage = response.usage.model_dump() if response.usage else {}
            return ChatReply(content=content.strip(), model=candidate.model, usage=usage)

        raise ChatError("All model candidates failed: " + "; ".join(failures))

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
