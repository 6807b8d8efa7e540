"""
Cache key derivation for callshield.

Request bodies are first validated into explicit, normalized parameter
models (whitespace trimmed, documented defaults filled in) and then
hashed into a fixed-length key.  Two requests that differ only in field
order, surrounding whitespace, or an omitted-vs-explicit default produce
the same key.
"""

import hashlib
import json
from typing import Any, Dict, List, Literal, Mapping, Type, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from callshield.exceptions import InvalidParamsError

DEFAULT_VOICE_TYPE = "zh_female_tianmeixiaomei_emo_v2_mars_bigtts"
DEFAULT_ENCODING = "mp3"
DEFAULT_SAMPLE_RATE = 24000
MAX_TEXT_LENGTH = 1000

Emotion = Literal["neutral", "happy", "sad", "angry", "surprised", "fearful"]
Role = Literal["system", "user", "assistant"]


class _ParamsModel(BaseModel):
    """Shared config: strict shape, alias-or-name input, immutable."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        # An explicit null means "use the default", same as omitting the field.
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


class SpeechParams(_ParamsModel):
    """Normalized parameters for a speech synthesis call.

    Attributes:
        text: Text to synthesize, trimmed (1-1000 characters).
        voice_type: Voice identifier.
        speed: Speech rate adjustment (-50 to 100).
        emotion: Delivery emotion.
        encoding: Output audio encoding.
        sample_rate: Output sample rate in Hz.
    """

    text: str = Field(..., min_length=1, max_length=MAX_TEXT_LENGTH)
    voice_type: str = Field(default=DEFAULT_VOICE_TYPE, alias="voiceType", min_length=1)
    speed: int = Field(default=0, ge=-50, le=100)
    emotion: Emotion = "neutral"
    encoding: str = Field(default=DEFAULT_ENCODING, min_length=1)
    sample_rate: int = Field(default=DEFAULT_SAMPLE_RATE, alias="sampleRate", gt=0)

    @field_validator("text", "voice_type", "encoding", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value


class ChatMessage(_ParamsModel):
    role: Role
    content: str = Field(..., min_length=1)

    @field_validator("content", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value


class TextGenParams(_ParamsModel):
    """Normalized parameters for a text generation call.

    Attributes:
        model: Upstream model name.
        messages: Non-empty conversation, contents trimmed.
        temperature: Sampling temperature (0.0-1.0).
        max_tokens: Completion token cap (1-4096).
        top_p: Nucleus sampling mass (0.0-1.0).
    """

    model: str = Field(..., min_length=1)
    messages: List[ChatMessage] = Field(..., min_length=1)
    temperature: float = Field(default=0.7, ge=0.0, le=1.0)
    max_tokens: int = Field(default=2048, ge=1, le=4096, alias="maxTokens")
    top_p: float = Field(default=0.9, ge=0.0, le=1.0, alias="topP")

    @field_validator("model", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value


NormalizedParams = Union[SpeechParams, TextGenParams]

OPERATION_MODELS: Dict[str, Type[BaseModel]] = {
    "tts": SpeechParams,
    "ark": TextGenParams,
}


def _operation_for(params: BaseModel) -> str:
    for operation, model_cls in OPERATION_MODELS.items():
        if isinstance(params, model_cls):
            return operation
    raise TypeError(f"Unsupported parameter type: {type(params).__name__}")


def normalize(operation: str, raw: Mapping[str, Any]) -> NormalizedParams:
    """Validate a raw request body into the operation's parameter model.

    Accepts camelCase or snake_case field names.  Unknown fields are
    rejected rather than silently hashed.

    Args:
        operation: Operation class (``"tts"`` or ``"ark"``).
        raw: JSON-like request body.

    Returns:
        The normalized, immutable parameter model.

    Raises:
        InvalidParamsError: If the operation is unknown or the body does
            not validate.
    """
    model_cls = OPERATION_MODELS.get(operation)
    if model_cls is None:
        raise InvalidParamsError(f"Operation '{operation}' is not cacheable")
    if not isinstance(raw, Mapping):
        raise InvalidParamsError("Request body must be a JSON object")
    try:
        return model_cls.model_validate(dict(raw))
    except ValidationError as exc:
        errors = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in exc.errors()
        ]
        raise InvalidParamsError("Parameter validation failed", errors) from exc


def derive_key(params: NormalizedParams) -> str:
    """Derive a deterministic SHA-256 cache key from normalized parameters.

    The parameter set (plus an operation discriminator) is serialized as
    JSON with lexicographically sorted field names before hashing.

    Args:
        params: A validated parameter model.

    Returns:
        64-character hex digest.
    """
    operation = _operation_for(params)
    payload = params.model_dump(mode="json", by_alias=False)
    payload["operation"] = operation
    canonical = json.dumps(
        payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
