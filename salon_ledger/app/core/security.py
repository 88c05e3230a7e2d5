import secrets

import bcrypt

# bcrypt only looks at the first 72 bytes and recent releases refuse longer input.
MAX_CODE_BYTES = 72


def generate_code(num_bytes: int) -> str:
    return secrets.token_urlsafe(num_bytes)


def hash_code(code: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(code.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_code(code: str, hashed: str) -> bool:
    encoded = code.encode("utf-8")
    if len(encoded) > MAX_CODE_BYTES:
        return False
    return bcrypt.checkpw(encoded, hashed.encode("utf-8"))
