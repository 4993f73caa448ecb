from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .time_utils import DEFAULT_TIME_FORMAT, DEFAULT_TIMEZONE
from .tokens import DEFAULT_ENCODING, DEFAULT_IMAGE_TOKENS


@dataclass
class LarkConfig:
    app_id: str = ""
    app_secret: str = ""
    chat_id: str = ""
    domain: str = "feishu"  # feishu | lark
    bot_name: str = ""
    history_days: float = 30.0
    page_size: int = 10
    rescan_interval_seconds: float = 0.0


@dataclass
class ModelPricing:
    input_price: float = 0.0
    output_price: float = 0.0
    image_tokens: int = DEFAULT_IMAGE_TOKENS


@dataclass
class ProviderConfig:
    name: str = "openai"
    api_key: str = ""
    base_url: str = ""
    currency_symbol: str = "$"
    models: Dict[str, ModelPricing] = field(default_factory=dict)


@dataclass
class LLMConfig:
    model: str = "gpt-4o-mini"
    max_completion_tokens: int = 1024
    max_prompt_tokens: int = 8000
    timeout_seconds: float = 60.0
    encoding: str = DEFAULT_ENCODING
    reply_footer: str = "\n\n模型: {model}"
    providers: List[ProviderConfig] = field(default_factory=list)


@dataclass
class AssistantConfig:
    system_prompt: str = "You are a helpful assistant taking part in a group chat."
    message_batch_period_days: float = 1.0
    idle_delay_seconds: float = 600.0
    instant_delay_seconds: float = 5.0
    display_timezone: str = DEFAULT_TIMEZONE
    time_format: str = DEFAULT_TIME_FORMAT
    internal_prefix: str = "[internal]"


@dataclass
class StorageConfig:
    state_dir: str = ".lark_pal_state"


@dataclass
class ServiceConfig:
    log_level: str = "INFO"
    lark: LarkConfig = field(default_factory=LarkConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    assistant: AssistantConfig = field(default_factory=AssistantConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)


def _resolve_default_config_path() -> Optional[Path]:
    env_path = os.getenv("LARK_PAL_CONFIG", "")
    if env_path:
        path = Path(env_path)
        if path.exists():
            return path
    local = Path.cwd() / "config.yaml"
    if local.exists():
        return local
    return None


def _load_yaml(path: Optional[Path]) -> Dict[str, Any]:
    if path is None or not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    return data if isinstance(data, dict) else {}


def _section(raw: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = raw.get(key, {})
    return value if isinstance(value, dict) else {}


def _load_providers(raw_providers: Any) -> List[ProviderConfig]:
    if not isinstance(raw_providers, list):
        return []
    providers: List[ProviderConfig] = []
    for entry in raw_providers:
        if not isinstance(entry, dict):
            continue
        models: Dict[str, ModelPricing] = {}
        raw_models = entry.get("models", {})
        if isinstance(raw_models, dict):
            for model_name, pricing in raw_models.items():
                pricing = pricing if isinstance(pricing, dict) else {}
                models[str(model_name)] = ModelPricing(
                    input_price=float(pricing.get("input_price", 0.0) or 0.0),
                    output_price=float(pricing.get("output_price", 0.0) or 0.0),
                    image_tokens=int(pricing.get("image_tokens", DEFAULT_IMAGE_TOKENS)),
                )
        name = str(entry.get("name", "") or "openai")
        env_key = f"LARK_PAL_{name.upper().replace('-', '_')}_API_KEY"
        providers.append(
            ProviderConfig(
                name=name,
                api_key=os.getenv(env_key, str(entry.get("api_key", "") or "")),
                base_url=str(entry.get("base_url", "") or ""),
                currency_symbol=str(entry.get("currency_symbol", "$") or "$"),
                models=models,
            )
        )
    return providers


def load_config(path: Optional[str] = None) -> ServiceConfig:
    config_path = Path(path) if path else _resolve_default_config_path()
    raw = _load_yaml(config_path)

    lark_raw = _section(raw, "lark")
    llm_raw = _section(raw, "llm")
    assistant_raw = _section(raw, "assistant")
    storage_raw = _section(raw, "storage")

    lark_config = LarkConfig(
        app_id=os.getenv("LARK_APP_ID", str(lark_raw.get("app_id", "") or "")),
        app_secret=os.getenv("LARK_APP_SECRET", str(lark_raw.get("app_secret", "") or "")),
        chat_id=os.getenv("LARK_CHAT_ID", str(lark_raw.get("chat_id", "") or "")),
        domain=str(lark_raw.get("domain", LarkConfig().domain) or LarkConfig().domain),
        bot_name=str(lark_raw.get("bot_name", "") or ""),
        history_days=float(lark_raw.get("history_days", LarkConfig().history_days)),
        page_size=int(lark_raw.get("page_size", LarkConfig().page_size)),
        rescan_interval_seconds=float(
            lark_raw.get("rescan_interval_seconds", LarkConfig().rescan_interval_seconds)
        ),
    )

    llm_config = LLMConfig(
        model=os.getenv("LARK_PAL_MODEL", str(llm_raw.get("model", LLMConfig().model) or LLMConfig().model)),
        max_completion_tokens=int(llm_raw.get("max_completion_tokens", LLMConfig().max_completion_tokens)),
        max_prompt_tokens=int(llm_raw.get("max_prompt_tokens", LLMConfig().max_prompt_tokens)),
        timeout_seconds=float(llm_raw.get("timeout_seconds", LLMConfig().timeout_seconds)),
        encoding=str(llm_raw.get("encoding", LLMConfig().encoding) or LLMConfig().encoding),
        reply_footer=str(llm_raw.get("reply_footer", LLMConfig().reply_footer) or ""),
        providers=_load_providers(llm_raw.get("providers", [])),
    )

    assistant_config = AssistantConfig(
        system_prompt=str(assistant_raw.get("system_prompt", AssistantConfig().system_prompt) or ""),
        message_batch_period_days=float(
            assistant_raw.get("message_batch_period_days", AssistantConfig().message_batch_period_days)
        ),
        idle_delay_seconds=float(
            os.getenv(
                "LARK_PAL_IDLE_DELAY",
                assistant_raw.get("idle_delay_seconds", AssistantConfig().idle_delay_seconds),
            )
        ),
        instant_delay_seconds=float(
            os.getenv(
                "LARK_PAL_INSTANT_DELAY",
                assistant_raw.get("instant_delay_seconds", AssistantConfig().instant_delay_seconds),
            )
        ),
        display_timezone=str(
            assistant_raw.get("display_timezone", AssistantConfig().display_timezone)
            or AssistantConfig().display_timezone
        ),
        time_format=str(assistant_raw.get("time_format", AssistantConfig().time_format) or DEFAULT_TIME_FORMAT),
        internal_prefix=str(assistant_raw.get("internal_prefix", AssistantConfig().internal_prefix) or ""),
    )

    storage_config = StorageConfig(
        state_dir=os.getenv("LARK_PAL_STATE_DIR", str(storage_raw.get("state_dir", StorageConfig().state_dir))),
    )

    return ServiceConfig(
        log_level=os.getenv("LARK_PAL_LOG_LEVEL", str(raw.get("log_level", "INFO") or "INFO")),
        lark=lark_config,
        llm=llm_config,
        assistant=assistant_config,
        storage=storage_config,
    )
