"""
TwiML Rendering

Builds the voice-control documents Twilio fetches when a call connects.

Every function is pure: no I/O and no shared state. Documents are built with
the Twilio SDK's ``VoiceResponse``, which XML-escapes all text, so free-form
messages and names can't inject markup into the document. Inputs are also
validated (length, URL scheme, finish key) and control characters stripped
before rendering; invalid input raises ValueError.
"""

import re
from urllib.parse import urlparse

from twilio.twiml.voice_response import VoiceResponse

VOICE = "alice"

# Twilio's <Say> limit
MAX_SAY_LENGTH = 4096
MAX_NAME_LENGTH = 100
MAX_RECORD_LENGTH_SECONDS = 14400
FINISH_KEYS = frozenset("0123456789#*")

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def _clean_text(value: str, field: str, max_length: int) -> str:
    cleaned = _CONTROL_CHARS.sub("", value or "").strip()
    if not cleaned:
        raise ValueError(f"{field} must not be empty")
    if len(cleaned) > max_length:
        raise ValueError(f"{field} must be at most {max_length} characters")
    return cleaned


def spaced_digits(code: str) -> str:
    """'482913' -> '4 8 2 9 1 3', so text-to-speech reads each digit."""
    return " ".join(code)


def empty_response() -> str:
    """An empty document. Acknowledges a callback without doing anything."""
    return str(VoiceResponse())


def speak_code(code: str, sender_name: str) -> str:
    """Read a verification code digit by digit, repeat it, then say goodbye."""
    if not code or not code.isdigit():
        raise ValueError("code must contain digits only")
    name = _clean_text(sender_name, "sender_name", MAX_NAME_LENGTH)
    digits = spaced_digits(code)

    response = VoiceResponse()
    response.say(
        f"Your {name} verification code is: {digits}. "
        f"I repeat: {digits}. "
        "This code will expire in 10 minutes.",
        voice=VOICE,
    )
    response.pause(length=1)
    response.say("Goodbye.", voice=VOICE)
    return str(response)


def speak_message(message: str, from_name: str) -> str:
    """Announce the sender, speak the message verbatim, pause, thank the listener."""
    text = _clean_text(message, "message", MAX_SAY_LENGTH)
    name = _clean_text(from_name, "from_name", MAX_NAME_LENGTH)

    response = VoiceResponse()
    response.say(f"This is a message from {name}.", voice=VOICE)
    response.pause(length=1)
    response.say(text, voice=VOICE)
    response.pause(length=1)
    response.say("Thank you.", voice=VOICE)
    return str(response)


def play_audio(audio_url: str, from_name: str) -> str:
    """Announce the sender, play an audio file Twilio can fetch, thank the listener."""
    parsed = urlparse(audio_url or "")
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError("audio_url must be an absolute http(s) URL")
    name = _clean_text(from_name, "from_name", MAX_NAME_LENGTH)

    response = VoiceResponse()
    response.say(f"This is a message from {name}.", voice=VOICE)
    response.pause(length=1)
    response.play(audio_url)
    response.pause(length=1)
    response.say("Thank you.", voice=VOICE)
    return str(response)


def prompt_and_record(max_length_seconds: int = 300, finish_key: str = "#") -> str:
    """
    Ask the callee to record a message after the tone.

    Recording stops on the finish key or after ``max_length_seconds``. The
    recording is captured, not transcribed.
    """
    if not 1 <= max_length_seconds <= MAX_RECORD_LENGTH_SECONDS:
        raise ValueError(
            f"max_length_seconds must be between 1 and {MAX_RECORD_LENGTH_SECONDS}"
        )
    if finish_key not in FINISH_KEYS:
        raise ValueError("finish_key must be a single digit, '#' or '*'")

    key_name = {"#": "the pound key", "*": "the star key"}.get(finish_key, finish_key)

    response = VoiceResponse()
    response.say(
        f"Please record your message after the tone. Press {key_name} when you are finished.",
        voice=VOICE,
    )
    response.record(
        max_length=max_length_seconds,
        finish_on_key=finish_key,
        play_beep=True,
        transcribe=False,
    )
    response.say("Thank you. Your message has been recorded. Goodbye.", voice=VOICE)
    return str(response)


__all__ = [
    "empty_response",
    "play_audio",
    "prompt_and_record",
    "spaced_digits",
    "speak_code",
    "speak_message",
]
