import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_PLACEHOLDER_KEYS = {"CHANGE_ME", "REPLACE_ME", "YOUR_API_KEY"}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r (not a number), using %s", name, raw, default)
        return default


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def is_placeholder_key(value: str) -> bool:
    upper = value.strip().upper()
    return not upper or upper.startswith("YOUR_") or upper in _PLACEHOLDER_KEYS


@dataclass(frozen=True)
class Settings:
    # Analysis loop
    check_interval_sec: float = 45.0
    check_prefetch_sec: float = 7.0
    feedback_dismiss_sec: float = 12.0
    highlight_sec: float = 6.0
    highlight_max_area: float = 0.25
    capture_timeout_sec: float = 10.0

    # Turn taking
    listen_restart_delay_sec: float = 0.3
    speaking_timeout_sec: float = 30.0
    awaiting_input_timeout_sec: float = 60.0
    speech_safety_timeout_sec: float = 45.0
    speech_max_chars: int = 300

    # Persistence ("" keeps everything in memory)
    store_dir: str = ""

    # External services
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-haiku-4-5-20251001"
    elevenlabs_api_key: str = ""
    elevenlabs_voice_id: str = "9BWtsMINqrJLrRacOk9x"
    deepgram_api_key: str = ""
    deepgram_model: str = "nova-2"
    frontend_url: str = "http://localhost:3000"

    @property
    def prefetch_mark(self) -> int:
        """Countdown value at which the analysis call is issued."""
        interval = int(self.check_interval_sec)
        return max(1, min(int(self.check_prefetch_sec), interval))

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = cls()
        return cls(
            check_interval_sec=max(1.0, _env_float("CHECK_INTERVAL_SEC", defaults.check_interval_sec)),
            check_prefetch_sec=_env_float("CHECK_PREFETCH_SEC", defaults.check_prefetch_sec),
            feedback_dismiss_sec=_env_float("FEEDBACK_DISMISS_SEC", defaults.feedback_dismiss_sec),
            highlight_sec=_env_float("HIGHLIGHT_SEC", defaults.highlight_sec),
            highlight_max_area=_env_float("HIGHLIGHT_MAX_AREA", defaults.highlight_max_area),
            capture_timeout_sec=_env_float("CAPTURE_TIMEOUT_SEC", defaults.capture_timeout_sec),
            listen_restart_delay_sec=_env_float(
                "LISTEN_RESTART_DELAY_SEC", defaults.listen_restart_delay_sec
            ),
            speaking_timeout_sec=_env_float("SPEAKING_TIMEOUT_SEC", defaults.speaking_timeout_sec),
            awaiting_input_timeout_sec=_env_float(
                "AWAITING_INPUT_TIMEOUT_SEC", defaults.awaiting_input_timeout_sec
            ),
            speech_safety_timeout_sec=_env_float(
                "SPEECH_SAFETY_TIMEOUT_SEC", defaults.speech_safety_timeout_sec
            ),
            speech_max_chars=int(_env_float("SPEECH_MAX_CHARS", defaults.speech_max_chars)),
            store_dir=_env_str("STORE_DIR"),
            anthropic_api_key=_env_str("ANTHROPIC_API_KEY"),
            anthropic_model=_env_str("ANTHROPIC_MODEL", defaults.anthropic_model),
            elevenlabs_api_key=_env_str("ELEVENLABS_API_KEY"),
            elevenlabs_voice_id=_env_str("ELEVENLABS_VOICE_ID", defaults.elevenlabs_voice_id),
            deepgram_api_key=_env_str("DEEPGRAM_API_KEY"),
            deepgram_model=_env_str("DEEPGRAM_MODEL", defaults.deepgram_model),
            frontend_url=_env_str("FRONTEND_URL", defaults.frontend_url),
        )
