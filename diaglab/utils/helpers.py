import re

from fastapi import Request

UNKNOWN_CLIENT = "unknown"

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
OTP_CODE_PATTERN = re.compile(r"^\d{6}$")


def normalize_email(email: str) -> str:
    return email.strip().lower()


def is_valid_email(email) -> bool:
    return isinstance(email, str) and bool(EMAIL_PATTERN.match(email.strip()))


def is_valid_otp_code(code) -> bool:
    return isinstance(code, str) and bool(OTP_CODE_PATTERN.match(code))


def get_client_ip(request: Request) -> str:
    """
    Resolve the caller's IP address

    Proxies are trusted in order: X-Forwarded-For (first hop), X-Real-IP,
    CF-Connecting-IP, then the socket peer. Every unresolvable client shares
    the "unknown" bucket.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    for header in ("x-real-ip", "cf-connecting-ip"):
        value = request.headers.get(header)
        if value:
            return value.strip()
    if request.client and request.client.host:
        return request.client.host
    return UNKNOWN_CLIENT


def get_user_agent(request: Request) -> str:
    return (request.headers.get("user-agent") or UNKNOWN_CLIENT)[:255]


def mask_email(email: str) -> str:
    if not email or "@" not in email:
        return "***"
    local_part, domain = email.split("@", 1)
    if len(local_part) <= 2:
        return f"{local_part[:1]}***@{domain}"
    return f"{local_part[:2]}***@{domain}"
