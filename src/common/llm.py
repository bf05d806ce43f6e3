import warnings
from typing import Any

import litellm
from litellm import acompletion as litellm_acompletion

warnings.filterwarnings("ignore", message="Pydantic serializer warnings")
litellm.drop_params = True


def _params(
    model: str,
    messages: list[dict],
    stream: bool,
    temperature: float,
    max_tokens: int,
    **kwargs,
) -> dict[str, Any]:
    return {
        "model": model,
        "messages": messages,
        "stream": stream,
        "temperature": temperature,
        "max_tokens": max_tokens,
        **kwargs,
    }


async def acompletion(
    model: str,
    messages: list[dict],
    stream: bool = False,
    temperature: float = 0.5,
    max_tokens: int = 2000,
    **kwargs,
) -> Any:
    return await litellm_acompletion(
        **_params(model, messages, stream, temperature, max_tokens, **kwargs)
    )


def message_text(response: Any) -> str:
    try:
        return response.choices[0].message.content or ""
    except (AttributeError, IndexError):
        return ""


def delta_text(chunk: Any) -> str:
    try:
        delta = chunk.choices[0].delta
    except (AttributeError, IndexError):
        return ""
    return getattr(delta, "content", None) or ""


def status_code_of(error: BaseException) -> int | None:
    code = getattr(error, "status_code", None)
    if code is None:
        response = getattr(error, "response", None)
        code = getattr(response, "status_code", None)
    try:
        return int(code) if code is not None else None
    except (TypeError, ValueError):
        return None
