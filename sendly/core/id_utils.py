import shortuuid


def generate_shortuuid() -> str:
    return shortuuid.uuid()


def generate_reference(prefix: str, length: int = 18) -> str:
    """Opaque id with a readable prefix, e.g. `cs_stub_...` for stub checkout sessions."""
    return f"{prefix}{shortuuid.ShortUUID().random(length=length)}"
