import uuid
import time
import hashlib
import platform
import secrets
from functools import lru_cache

import psutil

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"

@lru_cache(maxsize=1)
def get_machine_id() -> str:
    """
    Machine id sent to CodeCheckout with every validation and analytics event.

    The same host always yields the same 64-character hex id, so the API can
    tell installations apart without ever seeing raw hardware details.
    """
    node = uuid.getnode()
    mac_address = ":".join(f"{(node >> shift) & 0xff:02x}" for shift in range(40, -8, -8))

    parts = [
        mac_address,
        str(psutil.cpu_count(logical=True)),
        platform.system(),
        platform.machine(),
    ]
    # Only the digest leaves the machine
    return hashlib.sha256("|".join(parts).encode()).hexdigest()

def generate_session_id() -> str:
    return str(uuid.uuid4())

def _to_base36(value: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits)) or "0"

def generate_license_key() -> str:
    """
    Generate a license key of the form TIMESTAMP-RANDOM, both base36 and upper-cased.
    """
    timestamp = _to_base36(int(time.time() * 1000))
    random_part = "".join(secrets.choice(_BASE36) for _ in range(11))
    return f"{timestamp}-{random_part}".upper()

def mask_license_key(license_key: str) -> str:
    """Only the last four characters of a license key ever reach the logs."""
    if not license_key:
        return ""
    return "*" * max(len(license_key) - 4, 0) + license_key[-4:]
