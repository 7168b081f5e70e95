"""Load settings.yaml into typed dataclasses. Environment variables override."""

import logging
import math
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"

DEFAULT_ROUNDS = 10
MAX_ROUNDS = 10
DEFAULT_TIMEOUT_SEC = 30.0
DEFAULT_MAX_TOKENS = 1200


@dataclass
class ReasonerConfig:
    sdk: str
    model: str
    api_key_env: str
    timeout_sec: float = DEFAULT_TIMEOUT_SEC
    max_tokens: int = DEFAULT_MAX_TOKENS
    temperature: float = 0.2
    base_url: str | None = None


@dataclass
class ResponderConfig:
    base_url: str | None
    token_env: str
    stream_path: str = "/api/secondme/chat/stream"
    timeout_sec: float = 60.0


@dataclass
class ForumConfig:
    base_url: str | None
    token_env: str
    list_path: str = "/mentions"
    reply_path: str = "/replies"
    mention_target: str = "@secondme"
    min_content_length: int = 12
    max_reply_length: int = 1200


@dataclass
class PromptsConfig:
    coach: str
    judge: str
    report: str
    synthesis: str
    evaluation: str
    responder_round: str
    final_answer: str
    json_retry: str
    path_briefs: dict[str, str] = field(default_factory=dict)


@dataclass
class DefaultsConfig:
    rounds: int
    output_dir: Path
    system_agents_enabled: bool = True


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    reasoner: ReasonerConfig
    responder: ResponderConfig
    forum: ForumConfig
    prompts: PromptsConfig
    reasoner_available: bool = False


def clamp_rounds(value: object, default: int = DEFAULT_ROUNDS) -> int:
    """Coerce a round count into [1, MAX_ROUNDS]; non-finite or below 1 falls back to default."""
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number) or number < 1:
        return default
    return min(int(number), MAX_ROUNDS)


def _positive_int(raw: str | None, fallback: int) -> int:
    if raw is None:
        return fallback
    try:
        value = float(raw)
    except ValueError:
        return fallback
    if not math.isfinite(value) or value < 1:
        return fallback
    return int(value)


def _env_flag(raw: str | None, fallback: bool) -> bool:
    if raw is None or not raw.strip():
        return fallback
    return raw.strip().lower() not in {"0", "false", "no", "off"}


def _env(name: str) -> str | None:
    value = os.environ.get(name, "").strip()
    return value or None


def resolve_api_key(config: ReasonerConfig) -> str:
    """Return the reasoner API key, accepting ANTHROPIC_AUTH_TOKEN for the anthropic SDK."""
    if config.sdk == "anthropic":
        token = os.environ.get("ANTHROPIC_AUTH_TOKEN", "").strip()
        if token:
            return token
    return os.environ.get(config.api_key_env, "").strip()


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing.
    Logs a warning for a missing reasoner API key but does not raise, so
    disabled-agent mode still works without one.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    defaults_raw = raw["defaults"]
    defaults = DefaultsConfig(
        rounds=clamp_rounds(os.environ.get("SYSTEM_AGENT_DEBATE_ROUNDS", defaults_raw.get("rounds"))),
        output_dir=Path(defaults_raw["output_dir"]),
        system_agents_enabled=_env_flag(
            os.environ.get("SYSTEM_AGENT_ENABLED"),
            bool(defaults_raw.get("system_agents_enabled", True)),
        ),
    )

    reasoner_raw = raw["reasoner"]
    timeout_ms = _positive_int(
        os.environ.get("SYSTEM_AGENT_TIMEOUT_MS"),
        int(float(reasoner_raw.get("timeout_sec", DEFAULT_TIMEOUT_SEC)) * 1000),
    )
    reasoner = ReasonerConfig(
        sdk=str(reasoner_raw["sdk"]),
        model=_env("CLAUDE_AGENT_MODEL") or _env("ANTHROPIC_MODEL") or str(reasoner_raw["model"]),
        api_key_env=str(reasoner_raw["api_key_env"]),
        timeout_sec=timeout_ms / 1000,
        max_tokens=_positive_int(
            os.environ.get("ANTHROPIC_MAX_TOKENS"),
            int(reasoner_raw.get("max_tokens", DEFAULT_MAX_TOKENS)),
        ),
        temperature=float(reasoner_raw.get("temperature", 0.2)),
        base_url=_env("ANTHROPIC_BASE_URL") or reasoner_raw.get("base_url"),
    )

    responder_raw = raw.get("responder", {})
    responder = ResponderConfig(
        base_url=_env("SECONDME_API_BASE_URL") or responder_raw.get("base_url"),
        token_env=str(responder_raw.get("token_env", "SECONDME_ACCESS_TOKEN")),
        stream_path=str(responder_raw.get("stream_path", "/api/secondme/chat/stream")),
        timeout_sec=float(responder_raw.get("timeout_sec", 60.0)),
    )

    forum_raw = raw.get("forum", {})
    forum = ForumConfig(
        base_url=_env("FORUM_API_BASE_URL") or forum_raw.get("base_url"),
        token_env=str(forum_raw.get("token_env", "FORUM_API_TOKEN")),
        list_path=_env("FORUM_LIST_PATH") or str(forum_raw.get("list_path", "/mentions")),
        reply_path=_env("FORUM_REPLY_PATH") or str(forum_raw.get("reply_path", "/replies")),
        mention_target=_env("FORUM_MENTION_TARGET") or str(forum_raw.get("mention_target", "@secondme")),
        min_content_length=_positive_int(
            os.environ.get("FORUM_MIN_CONTENT_LENGTH"), int(forum_raw.get("min_content_length", 12))
        ),
        max_reply_length=_positive_int(
            os.environ.get("FORUM_MAX_REPLY_LENGTH"), int(forum_raw.get("max_reply_length", 1200))
        ),
    )

    prompts_raw = raw["prompts"]
    briefs_raw = raw.get("path_briefs", {})
    prompts = PromptsConfig(
        coach=prompts_raw["coach"],
        judge=prompts_raw["judge"],
        report=prompts_raw["report"],
        synthesis=prompts_raw["synthesis"],
        evaluation=prompts_raw["evaluation"],
        responder_round=prompts_raw["responder_round"],
        final_answer=prompts_raw["final_answer"],
        json_retry=prompts_raw["json_retry"],
        path_briefs={k: str(v) for k, v in briefs_raw.items()},
    )

    api_key = resolve_api_key(reasoner)
    if api_key:
        logger.info("Reasoner available: %s (%s)", reasoner.sdk, reasoner.model)
    else:
        logger.warning(
            "Reasoner unavailable (no API key) — set %s in .env",
            reasoner.api_key_env,
        )

    return AppConfig(
        defaults=defaults,
        reasoner=reasoner,
        responder=responder,
        forum=forum,
        prompts=prompts,
        reasoner_available=bool(api_key),
    )
