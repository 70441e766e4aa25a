import re

MAX_LOGGED_TEXT_LENGTH = 80


def mask_identifier(identifier: str | None) -> str:
    """
    Mask a WhatsApp JID or phone number for log output.

    Keeps the last four digits so operators can still correlate log lines:
    "56912345678@s.whatsapp.net" -> "*******5678@s.whatsapp.net"
    """
    if not identifier:
        return "[unknown]"

    local, sep, domain = identifier.partition("@")
    local = local.split(":")[0]
    if len(local) <= 4:
        masked = "*" * len(local)
    else:
        masked = "*" * (len(local) - 4) + local[-4:]
    return f"{masked}{sep}{domain}"


def redact_pii(text: str, max_length: int = MAX_LOGGED_TEXT_LENGTH) -> str:
    """
    Redact potential Personally Identifiable Information (PII) from text.

    This function redacts common PII patterns including:
    - WhatsApp JIDs (number@s.whatsapp.net, id@g.us)
    - Email addresses
    - Chilean RUTs (12.345.678-9)
    - Phone numbers
    - Long numeric sequences

    The result is truncated to ``max_length`` characters.
    """
    # WhatsApp JIDs
    text = re.sub(r"\b\d+(?::\d+)?@(?:s\.whatsapp\.net|g\.us|lid)\b", "[JID]", text)

    # Email addresses
    text = re.sub(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}", "[EMAIL]", text)

    # Chilean RUT
    text = re.sub(r"\b\d{1,2}\.?\d{3}\.?\d{3}-[\dkK]\b", "[RUT]", text)

    # Phone numbers in international or local formats
    text = re.sub(r"\+?\d[\d\s-]{7,}\d", "[PHONE]", text)

    # Long numeric sequences that might be IDs
    text = re.sub(r"\b\d{8,}\b", "[ID]", text)

    if len(text) > max_length:
        text = text[:max_length] + "..."
    return text
