import secrets
import string
import uuid

_ROOM_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_room_id(length: int = 9) -> str:
    """Short base36 room id, e.g. ``k3x9q0abz``."""
    return "".join(secrets.choice(_ROOM_ID_ALPHABET) for _ in range(length))


def new_participant_id() -> str:
    return uuid.uuid4().hex
