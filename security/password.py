import bcrypt

# Checked against when the username is unknown so both paths cost one bcrypt round
_DUMMY_HASH = bcrypt.hashpw(b"loginguard-dummy-password", bcrypt.gensalt(rounds=12)).decode("utf-8")

def hash_password(plain_password: str) -> str:
    if not isinstance(plain_password, str) or len(plain_password) == 0:
        raise ValueError("Password must be a non-empty string")

    salt = bcrypt.gensalt(rounds=12)
    return bcrypt.hashpw(plain_password.encode("utf-8"), salt).decode("utf-8")

def verify_password(plain_password: str, password_hash) -> bool:
    """Primary credential check. Pass None as the hash for unknown users."""
    if password_hash is None:
        bcrypt.checkpw(b"not-the-password", _DUMMY_HASH.encode("utf-8"))
        return False
    if not plain_password:
        return False
    try:
        return bcrypt.checkpw(plain_password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # malformed stored hash
        return False
