"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。

核心只读两类值对象：ProviderSettings 与按顺序排列的 CloudProviderConfiguration 列表，
分别由 provider_settings_from / cloud_configurations_from 从 Settings 转换得到。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from action_core.domain.models import CloudProviderConfiguration, ProviderSettings


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("ACTION_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
        Path(__file__).resolve().parents[1] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except Exception as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class CloudProviderEntry(BaseModel):
    """config.yaml 中 cloud_providers 列表的一项。"""

    name: str
    vendor: str = "OpenAI"
    api_key: str = ""
    base_url: Optional[str] = None
    model: str
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    enabled: bool = True

    @field_validator("api_key")
    @classmethod
    def validate_api_key(cls, v: str) -> str:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- 基础设施 ----
    http_timeout: float = Field(default=60.0, ge=1.0, description="HTTP 超时时间（秒）")
    storage_root: str = Field(default=".storage", description="历史与用量统计的存储目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")
    request_workers: int = Field(default=4, ge=1, le=32, description="并发处理请求的工作线程数")
    max_refinement_rounds: int = Field(
        default=50,
        ge=1,
        le=500,
        description="结果窗口中连续修改的最大轮数",
    )

    # ---- Provider 切换策略 ----
    primary_service_type: str = Field(default="Cloud", description="主服务类型：Cloud 或 Local")
    fallback_service_type: str = Field(default="None", description="备用服务类型：Cloud、Local 或 None")

    # ---- 本地模型 ----
    local_model_path: str = Field(default="", description="GGUF 模型文件路径")
    local_context_size: int = Field(default=4096, ge=256, description="上下文长度（token）")
    local_max_tokens: int = Field(default=2048, ge=1, description="单次生成的最大 token 数")
    local_temperature: float = Field(default=0.7, ge=0.0, le=2.0, description="本地采样温度")
    local_cpu_cores: int = Field(default=4, ge=0, description="推理线程数，0 表示由后端决定")
    prefer_gpu: bool = Field(default=True, description="是否尽量把所有层放到 GPU")
    local_memory_map: bool = Field(default=True, description="是否以 mmap 方式加载模型文件")
    local_memory_lock: bool = Field(default=False, description="是否把模型锁定在物理内存中")
    local_auto_unload: bool = Field(default=True, description="空闲一段时间后自动卸载模型")
    local_idle_timeout_minutes: int = Field(default=30, ge=1, description="自动卸载前的空闲分钟数")

    # ---- 云端链路（按顺序尝试） ----
    cloud_providers: List[CloudProviderEntry] = Field(default_factory=list)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("primary_service_type", "fallback_service_type")
    @classmethod
    def normalize_service_type(cls, v: str) -> str:
        return (v or "None").strip() or "None"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


def provider_settings_from(cfg: Settings) -> ProviderSettings:
    """把 Settings 转成核心读取的 ProviderSettings。"""

    return ProviderSettings(
        primary_service_type=cfg.primary_service_type,
        fallback_service_type=cfg.fallback_service_type,
        local_model_path=os.path.expanduser(cfg.local_model_path) if cfg.local_model_path else "",
        context_size=cfg.local_context_size,
        max_tokens=cfg.local_max_tokens,
        temperature=cfg.local_temperature,
        cpu_cores=cfg.local_cpu_cores,
        prefer_gpu=cfg.prefer_gpu,
        memory_map=cfg.local_memory_map,
        memory_lock=cfg.local_memory_lock,
        auto_unload=cfg.local_auto_unload,
        idle_timeout_minutes=cfg.local_idle_timeout_minutes,
    )


def cloud_configurations_from(cfg: Settings) -> List[CloudProviderConfiguration]:
    """按配置文件中的顺序返回云端配置，禁用项也保留，由链路自行跳过。"""

    return [
        CloudProviderConfiguration(
            name=entry.name,
            vendor=entry.vendor,
            api_key=entry.api_key,
            base_url=entry.base_url or None,
            model=entry.model,
            temperature=entry.temperature,
            enabled=entry.enabled,
        )
        for entry in cfg.cloud_providers
    ]


settings = Settings()
