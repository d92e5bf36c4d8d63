"""
Wire codec for controller envelopes.

Stateless: every frame is one compact JSON object. Decoding failures are
reported as DecodeError so the caller can drop the frame and keep reading.
"""
import json
from typing import Union

from pydantic import ValidationError

from ..exceptions import DecodeError
from ..schemas.envelope import Envelope


def encode(envelope: Envelope) -> bytes:
    data = envelope.model_dump(mode="json", by_alias=True, exclude_none=True)
    if envelope.secret is not None:
        # model_dump masks SecretStr; the controller needs the real value
        data["secret"] = envelope.secret.get_secret_value()
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def decode(raw: Union[bytes, str]) -> Envelope:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError(f"Frame is not valid UTF-8: {e}") from e

    try:
        data = json.loads(raw)
    except ValueError as e:
        raise DecodeError(f"Frame is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise DecodeError(f"Frame must be a JSON object, got {type(data).__name__}")

    try:
        return Envelope.model_validate(data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or 'envelope'}: {err['msg']}" for err in e.errors()
        )
        raise DecodeError(f"Invalid envelope (type={data.get('type')!r}): {problems}") from e
