# libs/vet_agent/validation.py
import base64
import binascii
from typing import Any, List, Sequence

from common.env import int_from_env
from common.errors import RequestValidationError

from .types import ConversationTurn, ImageAttachment

MAX_INPUT_CHARS = int_from_env("MAX_INPUT_CHARS", 50000)
MAX_IMAGE_BYTES = int_from_env("MAX_IMAGE_BYTES", 5 * 1024 * 1024)
MAX_IMAGES_PER_TURN = int_from_env("MAX_IMAGES_PER_TURN", 4)
ALLOWED_ROLES = {"user", "assistant", "system"}
ALLOWED_IMAGE_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp"}


def _validate_image(image: ImageAttachment, where: str) -> None:
    if image.media_type not in ALLOWED_IMAGE_TYPES:
        raise RequestValidationError(f"{where}.media_type must be one of {sorted(ALLOWED_IMAGE_TYPES)}")
    if not isinstance(image.data, str) or not image.data:
        raise RequestValidationError(f"{where}.data must be a non-empty base64 string")
    try:
        raw = base64.b64decode(image.data, validate=True)
    except (binascii.Error, ValueError):
        raise RequestValidationError(f"{where}.data is not valid base64") from None
    if len(raw) > MAX_IMAGE_BYTES:
        raise RequestValidationError(f"{where} too large: {len(raw)} bytes (max {MAX_IMAGE_BYTES})")


def validate_messages(messages: Sequence[Any], max_chars: int = MAX_INPUT_CHARS) -> List[ConversationTurn]:
    """Checks the incoming conversation and returns it as ConversationTurn objects."""
    if not isinstance(messages, (list, tuple)) or not messages:
        raise RequestValidationError("messages must be a non-empty list")

    turns: List[ConversationTurn] = []
    total = 0
    for i, m in enumerate(messages):
        turn = m if isinstance(m, ConversationTurn) else (
            ConversationTurn.from_dict(m) if isinstance(m, dict) else None
        )
        if turn is None:
            raise RequestValidationError(f"messages[{i}] must be an object with role and content")
        if turn.role not in ALLOWED_ROLES:
            raise RequestValidationError(f"messages[{i}].role must be one of {sorted(ALLOWED_ROLES)}")
        if not isinstance(turn.content, str) or not turn.content.strip():
            raise RequestValidationError(f"messages[{i}].content must be a non-empty string")
        if turn.images:
            if turn.role != "user":
                raise RequestValidationError(f"messages[{i}]: only user turns may carry images")
            if len(turn.images) > MAX_IMAGES_PER_TURN:
                raise RequestValidationError(f"messages[{i}]: at most {MAX_IMAGES_PER_TURN} images per turn")
            for j, image in enumerate(turn.images):
                _validate_image(image, f"messages[{i}].images[{j}]")
        # image payloads are bounded separately
        total += len(turn.content)
        turns.append(turn)

    if total > max_chars:
        raise RequestValidationError(f"input too long: {total} chars (max {max_chars})")
    return turns
