import secrets
import string


class WouldBlock(Exception):
    """Raised when a non-blocking read has no data ready yet."""
    pass


_USER_ALPHABET = string.ascii_lowercase + string.digits


def random_token() -> str:
    """A single-use fingerprint to embed in a probe message."""
    return secrets.token_hex(16)


def random_sender(domain: str = "example.com") -> str:
    return f"{secrets.token_hex(6)}@{domain}"


def random_user() -> str:
    """Generate a listener name shaped like ``abcd.ef12``."""
    head = "".join(secrets.choice(_USER_ALPHABET) for _ in range(4))
    tail = "".join(secrets.choice(_USER_ALPHABET) for _ in range(4))
    return f"{head}.{tail}"
