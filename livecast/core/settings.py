"""
livecast.core.settings
~~~~~~~~~~~~~~~~~~~~~~

集中式配置管理，基于 pydantic-settings 自动从 ``.env`` 文件加载。

支持多环境配置（dev / test / prod），加载顺序为:
  1. 环境变量（最高优先级）
  2. ``.env.{ENVIRONMENT}`` 环境专属文件
  3. ``.env`` 基础文件
  4. 字段默认值（最低优先级）
"""
from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT: Path = Path(__file__).resolve().parent.parent.parent

# 读取当前环境标识（在 Settings 类定义之前，用于决定加载哪个 .env 文件）
_CURRENT_ENV: str = os.getenv("ENVIRONMENT", "dev")


class Settings(BaseSettings):
    """全局配置对象，字段值按如下优先级加载：环境变量 > .env.{env} > .env > 默认值。"""

    # ── 基础 ──────────────────────────────────────────────────────────
    PROJECT_NAME: str = Field(default="LiveCast Signaling", description="项目名称")
    VERSION: str = Field(default="0.1.0", description="版本号")
    ENVIRONMENT: Literal["dev", "test", "prod"] = Field(
        default="dev",
        description="运行环境：dev / test / prod",
    )

    # ── 服务 ──────────────────────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0", description="服务监听地址")
    PORT: int = Field(default=8000, description="服务监听端口")
    LOG_LEVEL: str = Field(default="INFO", description="日志级别（可被环境属性覆盖）")

    # ── 信令 / 房间 ───────────────────────────────────────────────────
    ROOM_ID_LENGTH: int = Field(default=9, ge=4, le=32, description="自动生成的房间 ID 长度")
    OUTBOUND_QUEUE_SIZE: int = Field(
        default=256,
        ge=1,
        description="每个连接的待发送消息队列上限，满则丢弃并记录投递失败",
    )
    NEGOTIATION_TIMEOUT_SECONDS: float = Field(
        default=30.0,
        gt=0,
        description="offer/answer 协商卡住多久后判定为失败",
    )

    # ── 聊天 ──────────────────────────────────────────────────────────
    CHAT_MAX_LENGTH: int = Field(default=500, ge=1, description="单条聊天消息最大长度")
    CHAT_RATE_LIMIT_INTERVAL: float = Field(
        default=0.5,
        ge=0,
        description="同一连接两条聊天消息之间的最小间隔（秒）",
    )

    # ── STUN / TURN ───────────────────────────────────────────────────
    STUN_SERVER: str | None = Field(default=None, description="自定义 STUN 服务器地址")
    TURN_URL: str | None = Field(default=None, description="TURN 服务器地址")
    TURN_USERNAME: str | None = Field(default=None, description="TURN 用户名")
    TURN_PASSWORD: str | None = Field(default=None, description="TURN 密码")

    # ── 客户端 ────────────────────────────────────────────────────────
    SIGNALING_URL: str = Field(
        default="ws://127.0.0.1:8000/ws/signaling",
        description="客户端连接的信令 WebSocket 地址",
    )

    # ── Pydantic Settings ─────────────────────────────────────────────
    # 先加载 .env.{env} 再加载 .env，前者优先级更高
    model_config = SettingsConfigDict(
        env_file=(f".env.{_CURRENT_ENV}", ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── 环境判断 ──────────────────────────────────────────────────────

    @property
    def is_prod(self) -> bool:
        """当前是否为生产环境。"""
        return self.ENVIRONMENT == "prod"

    @property
    def is_test(self) -> bool:
        """当前是否为测试环境。"""
        return self.ENVIRONMENT == "test"

    @property
    def is_dev(self) -> bool:
        """当前是否为开发环境。"""
        return self.ENVIRONMENT == "dev"

    # ── 环境差异化行为 ────────────────────────────────────────────────

    @property
    def debug(self) -> bool:
        """是否开启 debug 模式。仅 dev 环境开启。"""
        return self.is_dev

    @property
    def reload(self) -> bool:
        """是否开启热重载。仅 dev 环境开启。"""
        return self.is_dev

    @property
    def effective_log_level(self) -> str:
        """根据环境自动推断日志级别。

        - dev  → INFO
        - test → DEBUG（方便排查测试失败）
        - prod → WARNING（减少噪音）

        如果环境变量中显式设置了 LOG_LEVEL，会覆盖此默认推断。
        """
        env_log = os.getenv("LOG_LEVEL")
        if env_log:
            return env_log
        return {
            "dev": "INFO",
            "test": "DEBUG",
            "prod": "WARNING",
        }.get(self.ENVIRONMENT, "INFO")

    @property
    def allow_cors_all_origins(self) -> bool:
        """是否允许所有 CORS 来源。非 prod 环境允许，方便本地调试。"""
        return not self.is_prod

    def ice_servers(self) -> list[dict]:
        """组装前端 / 客户端使用的 ICE 服务器列表。

        自定义 STUN 优先，随后追加公共 STUN 作为兜底；
        TURN 仅在地址、用户名、密码齐全时加入。
        """
        servers: list[dict] = []
        if self.STUN_SERVER:
            servers.append({"urls": self.STUN_SERVER})
        servers.extend([
            {"urls": "stun:stun.l.google.com:19302"},
            {"urls": "stun:stun1.l.google.com:19302"},
        ])
        if self.TURN_URL and self.TURN_USERNAME and self.TURN_PASSWORD:
            servers.append({
                "urls": self.TURN_URL,
                "username": self.TURN_USERNAME,
                "credential": self.TURN_PASSWORD,
            })
        return servers


@lru_cache
def get_settings() -> Settings:
    """获取全局 Settings 单例（带缓存，避免重复解析 .env）。"""
    return Settings()


settings: Settings = get_settings()
