"""
CAI-Core - 配置模块

负责配置的加载、解析与强类型转换。
支持从 TOML 文件、环境变量 (可选 .env 文件) 或字典中加载配置。
"""

import logging
import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from .exceptions import ConfigError
from .protocols import constants

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CAIConfig:
    """CharacterAI 会话的强类型配置对象。

    所有字段均为只读 (frozen=True)。`automatic_reconnect` 只作为会话的初始值，
    运行时可以在会话对象上修改。

    Attributes:
        session_token: 会话令牌 (可选，也可以在 authenticate 时传入)。
        base_url: 主站地址，用于预取 edge_rollout 路由令牌。
        neo_api_url: neo 接口根地址 (角色、会话、消息)。
        plus_api_url: plus 接口根地址 (用户信息、设置)。
        dm_websocket_url: 私聊通道地址。
        group_chat_websocket_url: 群聊通道地址。
        automatic_reconnect: 通道断开后是否自动重连。
        fallback_edge_rollout: 响应中缺少路由令牌时使用的默认值。
        http_timeout: HTTP 请求超时 (秒)。
        open_timeout: WebSocket 传输层连接超时 (秒)。
        handshake_timeout: 群聊通道等待握手确认的超时 (秒)。
        command_timeout: 命令等待回复的默认超时 (秒)，None 表示不超时。
        user_agent: HTTP 与 WebSocket 请求使用的 User-Agent。
    """

    session_token: str = ""
    base_url: str = constants.BASE_URL
    neo_api_url: str = constants.NEO_API_URL
    plus_api_url: str = constants.PLUS_API_URL
    dm_websocket_url: str = constants.DM_WEBSOCKET_URL
    group_chat_websocket_url: str = constants.GROUP_CHAT_WEBSOCKET_URL
    automatic_reconnect: bool = True
    fallback_edge_rollout: str = constants.FALLBACK_EDGE_ROLLOUT
    http_timeout: float = 30.0
    open_timeout: float = 10.0
    handshake_timeout: float = 10.0
    command_timeout: float | None = None
    user_agent: str = constants.DEFAULT_USER_AGENT

    def __repr__(self) -> str:
        """隐藏会话令牌，防止日志泄露敏感信息。"""
        return (
            f"<{self.__class__.__name__} "
            f"token={'******' if self.session_token else 'None'}, "
            f"dm={self.dm_websocket_url}, "
            f"group={self.group_chat_websocket_url}, "
            f"auto_reconnect={self.automatic_reconnect}>"
        )


def create_config_from_dict(raw_data: dict[str, Any]) -> CAIConfig:
    """通用工厂：将字典转换为强类型配置对象。

    负责字段的清洗、默认值注入和类型转换。未知字段会被忽略并记录日志。

    Args:
        raw_data: 原始配置字典 (来自 TOML 或 Env)。

    Returns:
        CAIConfig: 验证并转换后的配置对象。

    Raises:
        ConfigError: 当字段格式错误时抛出。
    """
    try:

        def _get(key: str, default: Any) -> Any:
            return raw_data.get(key, default)

        def _to_bool(key: str, default: bool) -> bool:
            val = raw_data.get(key, default)
            if isinstance(val, bool):
                return val
            text = str(val).strip().lower()
            if text in ("1", "true", "yes", "on"):
                return True
            if text in ("0", "false", "no", "off", ""):
                return False
            raise ConfigError(f"布尔值格式无效 '{key}': {val}")

        def _to_float(key: str, default: float | None) -> float | None:
            val = raw_data.get(key, default)
            if val is None or (isinstance(val, str) and val.strip().lower() in ("", "none")):
                return None
            try:
                number = float(val)
            except (TypeError, ValueError):
                raise ConfigError(f"数值格式无效 '{key}': {val}")
            if number <= 0:
                raise ConfigError(f"超时必须为正数 '{key}': {val}")
            return number

        def _to_url(key: str, default: str, schemes: tuple[str, ...]) -> str:
            val = str(raw_data.get(key, default)).strip()
            if not val.startswith(schemes):
                raise ConfigError(f"URL 协议头无效 '{key}': {val}")
            return val

        known = set(CAIConfig.__dataclass_fields__)
        for key in raw_data:
            if key not in known:
                logger.debug(f"忽略未知配置字段: {key}")

        token = str(_get("session_token", "")).strip()
        if token.startswith(constants.TOKEN_PREFIX):
            token = token[len(constants.TOKEN_PREFIX) :]

        http_schemes = ("http://", "https://")
        ws_schemes = ("ws://", "wss://")

        return CAIConfig(
            session_token=token,
            base_url=_to_url("base_url", constants.BASE_URL, http_schemes),
            neo_api_url=_to_url("neo_api_url", constants.NEO_API_URL, http_schemes),
            plus_api_url=_to_url("plus_api_url", constants.PLUS_API_URL, http_schemes),
            dm_websocket_url=_to_url(
                "dm_websocket_url", constants.DM_WEBSOCKET_URL, ws_schemes
            ),
            group_chat_websocket_url=_to_url(
                "group_chat_websocket_url",
                constants.GROUP_CHAT_WEBSOCKET_URL,
                ws_schemes,
            ),
            automatic_reconnect=_to_bool("automatic_reconnect", True),
            fallback_edge_rollout=str(
                _get("fallback_edge_rollout", constants.FALLBACK_EDGE_ROLLOUT)
            ),
            http_timeout=_to_float("http_timeout", 30.0) or 30.0,
            open_timeout=_to_float("open_timeout", 10.0) or 10.0,
            handshake_timeout=_to_float("handshake_timeout", 10.0) or 10.0,
            command_timeout=_to_float("command_timeout", None),
            user_agent=str(_get("user_agent", constants.DEFAULT_USER_AGENT)),
        )

    except Exception as e:
        if isinstance(e, ConfigError):
            raise
        raise ConfigError(f"配置生成失败: {e}") from e


def load_config_from_toml(file_path: Path, profile: str = "default") -> CAIConfig:
    """从 TOML 文件加载配置。

    支持多层级查找策略:
    1. [profile.xxx]: 优先查找指定的 profile 块。
    2. [cai]: 单一配置块。
    3. Root: 根目录直接配置。

    Args:
        file_path: TOML 文件路径。
        profile: 配置预设名。默认为 "default"。

    Returns:
        CAIConfig: 配置对象。

    Raises:
        ConfigError: 文件读取失败或 Profile 不存在。
    """
    if not file_path.exists():
        raise ConfigError(f"配置文件未找到: {file_path}")

    try:
        with open(file_path, "rb") as f:
            data = tomllib.load(f)
    except Exception as e:
        raise ConfigError(f"读取 TOML 失败: {e}") from e

    raw_config = {}

    if "profile" in data:
        if profile not in data["profile"]:
            if profile != "default":
                raise ConfigError(f"未找到预设: [profile.{profile}]")
        else:
            raw_config = data["profile"][profile]

    elif "cai" in data:
        if profile != "default":
            logger.warning(f"配置仅包含 [cai] 节，忽略 profile='{profile}'。")
        raw_config = data["cai"]
    else:
        raw_config = data

    return create_config_from_dict(raw_config)


def load_config_from_env(env_file: Path | None = None) -> CAIConfig:
    """从环境变量加载配置。

    自动读取所有以 `CAI_` 开头的环境变量，并映射到配置字段。
    例如: `CAI_SESSION_TOKEN` -> `session_token`。

    Args:
        env_file: 可选的 .env 文件路径，存在时先加载 (覆盖已有变量)。

    Returns:
        CAIConfig: 配置对象。

    Raises:
        ConfigError: 未检测到任何相关环境变量，或指定的 .env 文件不存在。
    """
    if env_file is not None:
        if not env_file.exists():
            raise ConfigError(f".env 文件未找到: {env_file}")
        load_dotenv(dotenv_path=env_file, override=True)
        logger.debug(f"已加载配置文件: {env_file}")

    raw_data = {}
    for cfg_key in CAIConfig.__dataclass_fields__:
        val = os.environ.get(f"{constants.ENV_PREFIX}{cfg_key.upper()}")
        if val is not None:
            raw_data[cfg_key] = val

    if not raw_data:
        raise ConfigError(f"未检测到 {constants.ENV_PREFIX} 前缀的环境变量")

    return create_config_from_dict(raw_data)
