import uuid
import hashlib
import platform
from urllib.parse import urlsplit

import psutil

def normalize_site_url(site_url: str) -> str:
    """
    Reduce a base URL to a stable identifier: lower-case scheme and host,
    path without trailing slash, no query or fragment.
    """
    raw = site_url.strip()
    if "://" not in raw:
        raw = f"https://{raw}"
    parts = urlsplit(raw)
    host = (parts.hostname or "").lower()
    if parts.port:
        host = f"{host}:{parts.port}"
    path = parts.path.rstrip("/")
    return f"{parts.scheme.lower()}://{host}{path}"

def get_hardware_fingerprint() -> str:
    """
    Generate a unique hardware fingerprint for this system.
    Used as the site identifier when no base URL is configured.
    """
    mac = ':'.join(['{:02x}'.format((uuid.getnode() >> elements) & 0xff)
                    for elements in range(0, 2*6, 2)][::-1])

    cpu_count = str(psutil.cpu_count(logical=True))
    system = platform.system()
    machine = platform.machine()

    fingerprint_data = f"{mac}|{cpu_count}|{system}|{machine}"
    return hashlib.sha256(fingerprint_data.encode()).hexdigest()

def get_site_identifier(site_url: str = "") -> str:
    if site_url.strip():
        return normalize_site_url(site_url)
    return f"host:{get_hardware_fingerprint()}"

def get_system_info() -> dict:
    """
    Environment details reported to the license server with each request.
    """
    return {
        "os_platform": platform.system(),
        "os_release": platform.release(),
        "python_version": platform.python_version(),
        "cpu_count": psutil.cpu_count(logical=True),
        "architecture": platform.machine()
    }
