from __future__ import annotations

from clubcore.core.config import get_settings
from clubcore.core.messages import get_message, supported_locales


def test_english_message_is_formatted() -> None:
    assert get_message("RATE_LIMITED", "en", seconds=42) == (
        "Too many requests. Please wait 42 seconds and try again."
    )


def test_thai_message_is_formatted() -> None:
    message = get_message("RATE_LIMITED", "th", seconds=42)
    assert "42" in message
    assert message.startswith("คุณส่งคำขอบ่อยเกินไป")


def test_locale_lookup_is_case_insensitive() -> None:
    assert get_message("NOT_FOUND", "TH") == get_message("NOT_FOUND", "th")


def test_unknown_locale_falls_back_to_english() -> None:
    assert get_message("AUTH_REQUIRED", "fr") == "Please sign in to continue."


def test_default_locale_comes_from_settings(monkeypatch) -> None:
    monkeypatch.setenv("DEFAULT_LOCALE", "th")
    get_settings.cache_clear()
    assert get_message("NOT_FOUND") == "ไม่พบข้อมูลที่ระบุ"


def test_unknown_code_returns_the_code() -> None:
    assert get_message("SOMETHING_ELSE", "en") == "SOMETHING_ELSE"


def test_missing_parameter_returns_the_raw_template() -> None:
    assert "{seconds}" in get_message("RATE_LIMITED", "en")


def test_supported_locales() -> None:
    assert supported_locales() == ["en", "th"]
