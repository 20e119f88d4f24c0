from __future__ import annotations

from clubcore.core.config import get_settings


FALLBACK_LOCALE = "en"

# User-facing messages keyed by error code; placeholders use str.format syntax.
_MESSAGES: dict[str, dict[str, str]] = {
    "en": {
        "RATE_LIMITED": "Too many requests. Please wait {seconds} seconds and try again.",
        "RATE_LIMIT_UNAVAILABLE": "Rate limiting is temporarily unavailable. Please try again later.",
        "IDEMPOTENCY_KEY_INVALID": (
            "Idempotency-Key must be a valid UUID or an alphanumeric string (16-255 characters)."
        ),
        "IDEMPOTENCY_KEY_MISSING": "Idempotency-Key header is required for this endpoint.",
        "IDEMPOTENCY_KEY_CONFLICT": "Idempotency-Key was already used with a different request.",
        "IDEMPOTENCY_IN_PROGRESS": "An identical request is still being processed. Please retry shortly.",
        "AUTH_REQUIRED": "Please sign in to continue.",
        "AUTH_FORBIDDEN": "You do not have permission to perform this action.",
        "NOT_FOUND": "The requested resource was not found.",
        "VALIDATION_ERROR": "The submitted data is invalid.",
        "INTERNAL_ERROR": "An unexpected error occurred. Please quote reference {correlation_id} when reporting it.",
    },
    "th": {
        "RATE_LIMITED": "คุณส่งคำขอบ่อยเกินไป กรุณารอ {seconds} วินาทีแล้วลองใหม่อีกครั้ง",
        "RATE_LIMIT_UNAVAILABLE": "ระบบจำกัดคำขอขัดข้องชั่วคราว กรุณาลองใหม่ภายหลัง",
        "IDEMPOTENCY_KEY_INVALID": (
            "Idempotency-Key ต้องเป็น UUID หรือข้อความตัวอักษรและตัวเลข 16-255 ตัวอักษร"
        ),
        "IDEMPOTENCY_KEY_MISSING": "ต้องระบุ Idempotency-Key สำหรับคำขอนี้",
        "IDEMPOTENCY_KEY_CONFLICT": "Idempotency-Key นี้ถูกใช้กับคำขออื่นแล้ว",
        "IDEMPOTENCY_IN_PROGRESS": "คำขอเดียวกันกำลังดำเนินการอยู่ กรุณาลองใหม่อีกครั้งในอีกสักครู่",
        "AUTH_REQUIRED": "กรุณาเข้าสู่ระบบเพื่อดำเนินการต่อ",
        "AUTH_FORBIDDEN": "คุณไม่มีสิทธิ์ดำเนินการนี้",
        "NOT_FOUND": "ไม่พบข้อมูลที่ระบุ",
        "VALIDATION_ERROR": "ข้อมูลไม่ถูกต้อง",
        "INTERNAL_ERROR": "เกิดข้อผิดพลาดที่ไม่คาดคิด กรุณาแจ้งรหัสอ้างอิง {correlation_id} เมื่อติดต่อผู้ดูแลระบบ",
    },
}


def supported_locales() -> list[str]:
    return sorted(_MESSAGES)


def get_message(code: str, locale: str | None = None, **params: object) -> str:
    # Resolve the catalogue for the locale, falling back to English, then to the code itself.
    resolved = (locale or get_settings().default_locale or FALLBACK_LOCALE).lower()
    catalogue = _MESSAGES.get(resolved) or _MESSAGES[FALLBACK_LOCALE]
    template = catalogue.get(code) or _MESSAGES[FALLBACK_LOCALE].get(code)
    if template is None:
        return code
    try:
        return template.format(**params)
    except (KeyError, IndexError):
        return template
