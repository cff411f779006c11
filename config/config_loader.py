"""Load settings.yaml into typed dataclasses. Reports provider API keys at startup."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"

_MODES = ("round-robin", "moderator", "dynamic")


@dataclass
class ModelConfig:
    name: str
    sdk: str
    model: str
    api_key_env: str
    timeout_sec: int
    max_tokens: int
    base_url: str | None = None


@dataclass
class AgentConfig:
    name: str
    role: str
    model: str
    expertise: str = ""
    is_secretary: bool = False


@dataclass
class PromptsConfig:
    agent_system: str
    agent_turn: str
    round_summary: str
    incremental_update: str
    result_draft: str
    closing: str = "The discussion is wrapping up. Share brief closing thoughts."
    decide_rounds: str = (
        "You are a neutral secretary. The first round of a discussion on \"{subject}\" "
        "(goal: {goal}) is over. Decide how many rounds in total the discussion needs, "
        "between 2 and 10. Reply with JSON only: "
        "{{\"recommendedRounds\": <number>, \"reasoning\": \"<one sentence>\"}}\n\n{transcript}"
    )


@dataclass
class DefaultsConfig:
    mode: str
    max_rounds: int | None
    speed_ms: int
    output_dir: Path
    storage_dir: Path
    lock_dir: Path
    retry_backoff_sec: float = 2.0
    recent_messages: int = 12


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    models: dict[str, ModelConfig]
    agents: list[AgentConfig]
    prompts: PromptsConfig
    available_providers: set[str] = field(default_factory=set)


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing, ValueError on an
    unknown default mode or an agent pointing at an undefined model.
    Logs missing API keys but does not raise; callers check
    available_providers.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    defaults_raw = raw["defaults"]
    mode = str(defaults_raw.get("mode", "round-robin"))
    if mode not in _MODES:
        raise ValueError(f"Unknown conversation mode in settings: {mode}")
    max_rounds_raw = defaults_raw.get("max_rounds")
    defaults = DefaultsConfig(
        mode=mode,
        max_rounds=int(max_rounds_raw) if max_rounds_raw is not None else None,
        speed_ms=int(defaults_raw.get("speed_ms", 2000)),
        output_dir=Path(defaults_raw.get("output_dir", "./output")),
        storage_dir=Path(defaults_raw.get("storage_dir", "./conversations")),
        lock_dir=Path(defaults_raw.get("lock_dir", "./conversations/.locks")),
        retry_backoff_sec=float(defaults_raw.get("retry_backoff_sec", 2.0)),
        recent_messages=int(defaults_raw.get("recent_messages", 12)),
    )

    prompts_raw = raw["prompts"]
    prompts = PromptsConfig(
        agent_system=prompts_raw["agent_system"],
        agent_turn=prompts_raw["agent_turn"],
        round_summary=prompts_raw["round_summary"],
        incremental_update=prompts_raw["incremental_update"],
        result_draft=prompts_raw["result_draft"],
        closing=prompts_raw.get("closing", PromptsConfig.closing),
        decide_rounds=prompts_raw.get("decide_rounds", PromptsConfig.decide_rounds),
    )

    models: dict[str, ModelConfig] = {}
    available_providers: set[str] = set()

    for provider_name, model_raw in raw["models"].items():
        model_cfg = ModelConfig(
            name=provider_name,
            sdk=model_raw["sdk"],
            model=model_raw["model"],
            api_key_env=model_raw["api_key_env"],
            timeout_sec=int(model_raw["timeout_sec"]),
            max_tokens=int(model_raw["max_tokens"]),
            base_url=model_raw.get("base_url"),
        )
        models[provider_name] = model_cfg

        api_key = os.environ.get(model_raw["api_key_env"], "").strip()
        if api_key:
            available_providers.add(provider_name)
            logger.info("Provider available: %s", provider_name)
        else:
            logger.info(
                "Provider skipped (no API key): %s (set %s in .env)",
                provider_name,
                model_raw["api_key_env"],
            )

    agents: list[AgentConfig] = []
    for agent_raw in raw.get("agents", []):
        agent_cfg = AgentConfig(
            name=str(agent_raw["name"]),
            role=str(agent_raw["role"]),
            model=str(agent_raw["model"]),
            expertise=str(agent_raw.get("expertise", "")),
            is_secretary=bool(agent_raw.get("is_secretary", False)),
        )
        if agent_cfg.model not in models:
            raise ValueError(f"Agent {agent_cfg.name} uses undefined model: {agent_cfg.model}")
        agents.append(agent_cfg)

    return AppConfig(
        defaults=defaults,
        models=models,
        agents=agents,
        prompts=prompts,
        available_providers=available_providers,
    )
