"""Configuration loader with YAML parsing, env-var interpolation, and Pydantic validation."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import TYPE_CHECKING, Literal, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from functions_bot.errors import ConfigError
from functions_bot.log import get_logger

if TYPE_CHECKING:
    from functions_bot.messenger.models import IncomingMessage

logger = get_logger(__name__)

DEFAULT_MODEL = "gpt-4.1-mini"


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class CompletionParams(_Model):
    model: str = DEFAULT_MODEL
    temperature: Optional[float] = None


class ChatParams(_Model):
    confirmation: bool = False
    memoryless: bool = False
    forget_timeout: Optional[int] = Field(default=None, alias="forgetTimeout")  # seconds
    show_tool_messages: Union[bool, Literal["headers"], None] = Field(
        default=None, alias="showToolMessages"
    )
    show_telegram_names: bool = Field(default=False, alias="showTelegramNames")
    streaming: bool = False


class ButtonConfig(_Model):
    name: str
    prompt: str = ""
    wait_message: Optional[str] = Field(default=None, alias="waitMessage")
    row: Optional[int] = None


class AgentToolConfig(_Model):
    """A chat exposed to another chat as a tool."""

    name: str = ""
    agent_name: Optional[str] = None
    bot_name: Optional[str] = None
    description: Optional[str] = None
    prompt_append: Optional[str] = None


class ChatConfig(_Model):
    name: str = ""
    id: Optional[int] = None
    ids: list[int] = Field(default_factory=list)
    username: Optional[str] = None
    agent_name: Optional[str] = None
    bot_name: Optional[str] = None
    prefix: Optional[str] = None
    private_users: Optional[list[str]] = Field(default=None, alias="privateUsers")
    system_message: Optional[str] = Field(default=None, alias="systemMessage")
    completion_params: CompletionParams = Field(
        default_factory=CompletionParams, alias="completionParams"
    )
    local_model: Optional[str] = None
    chat_params: ChatParams = Field(default_factory=ChatParams, alias="chatParams")
    tools: list[Union[str, AgentToolConfig]] = Field(default_factory=list)
    tool_params: dict[str, dict] = Field(default_factory=dict, alias="toolParams")
    buttons: list[ButtonConfig] = Field(default_factory=list)
    http_token: Optional[str] = None

    def matches_id(self, chat_id: int) -> bool:
        return self.id == chat_id or chat_id in self.ids

    @property
    def tool_names(self) -> list[str]:
        return [t for t in self.tools if isinstance(t, str)]

    @property
    def agent_tools(self) -> list[AgentToolConfig]:
        return [t for t in self.tools if isinstance(t, AgentToolConfig)]


class AuthConfig(_Model):
    bot_token: str = ""
    openai_api_key: str = Field(default="", alias="chatgpt_api_key")
    openai_base_url: Optional[str] = None
    proxy_url: Optional[str] = None


class LocalModelConfig(_Model):
    name: str
    url: str
    model: str


class HttpConfig(_Model):
    host: str = "0.0.0.0"
    port: Optional[int] = None
    http_token: Optional[str] = None


class AppConfig(_Model):
    log_level: str = Field(default="INFO", alias="logLevel")
    json_logs: bool = False
    bot_name: str = ""
    auth: AuthConfig = Field(default_factory=AuthConfig)
    admin_users: list[str] = Field(default_factory=list, alias="adminUsers")
    private_users: list[str] = Field(default_factory=list, alias="privateUsers")
    local_models: list[LocalModelConfig] = Field(default_factory=list)
    http: HttpConfig = Field(default_factory=HttpConfig)
    answer_delay: float = 1.0  # debounce window, seconds
    history_limit: int = 20
    max_tool_rounds: int = 1
    confirmation_timeout: Optional[float] = None  # None: pending confirmations never expire
    chats: list[ChatConfig] = Field(default_factory=list)


_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)\}")


def _interpolate_env_vars(text: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""

    def _replace(match: re.Match) -> str:
        value = os.environ.get(match.group(1))
        if value is None:
            return match.group(0)
        return value

    return _ENV_VAR_PATTERN.sub(_replace, text)


def load_config(config_path: str | Path = "config.yml", env_path: str | Path = ".env") -> AppConfig:
    """Load and validate configuration from YAML file with env-var interpolation."""
    env_file = Path(env_path)
    if env_file.exists():
        load_dotenv(env_file)

    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    raw_text = config_file.read_text(encoding="utf-8")
    data = yaml.safe_load(_interpolate_env_vars(raw_text)) or {}
    try:
        return AppConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {config_file}: {e}") from e


def _includes_user(users: list[str], username: str) -> bool:
    return username.lower() in (u.lower() for u in users)


class ConfigStore:
    """Owns the live AppConfig; hot-reloads on file change and persists edits.

    Chat configuration is looked up per message so that a reloaded config is
    picked up without restarting.
    """

    def __init__(
        self,
        config: AppConfig,
        config_path: str | Path | None = None,
        env_path: str | Path = ".env",
    ):
        self._config = config
        self._path = Path(config_path) if config_path else None
        self._env_path = env_path
        self._mtime = self._read_mtime()

    @classmethod
    def from_file(cls, config_path: str | Path, env_path: str | Path = ".env") -> ConfigStore:
        return cls(load_config(config_path, env_path), config_path, env_path)

    @property
    def config(self) -> AppConfig:
        self.reload_if_changed()
        return self._config

    def _read_mtime(self) -> float | None:
        if self._path is None or not self._path.exists():
            return None
        return self._path.stat().st_mtime

    def reload_if_changed(self) -> bool:
        mtime = self._read_mtime()
        if mtime is None or mtime == self._mtime:
            return False
        self._mtime = mtime
        try:
            self._config = load_config(self._path, self._env_path)  # type: ignore[arg-type]
        except (ConfigError, yaml.YAMLError) as e:
            logger.error("config_reload_failed", path=str(self._path), error=str(e))
            return False
        logger.info("config_reloaded", path=str(self._path), chats=len(self._config.chats))
        return True

    def _save_chat_params(self, index: int, chat: ChatConfig) -> None:
        """Write one chat's params into the raw YAML; ``${VAR}`` references elsewhere stay as written."""
        if self._path is None:
            logger.warning("config_save_skipped", reason="no config path")
            return
        raw = yaml.safe_load(self._path.read_text(encoding="utf-8")) or {}
        raw_chats = raw.get("chats") or []
        if index < len(raw_chats):
            entry = raw_chats[index]
        else:
            entry = chat.model_dump(by_alias=True, exclude_none=True, exclude_defaults=True)
            raw_chats.append(entry)
        entry.pop("chat_params", None)
        entry["chatParams"] = chat.chat_params.model_dump(by_alias=True, exclude_unset=True)
        raw["chats"] = raw_chats
        with self._path.open("w", encoding="utf-8") as f:
            yaml.safe_dump(raw, f, allow_unicode=True, sort_keys=False)
        self._mtime = self._read_mtime()
        logger.info("config_saved", path=str(self._path), chat=chat.name)

    def is_admin(self, username: str | None) -> bool:
        return bool(username) and _includes_user(self._config.admin_users, username)  # type: ignore[arg-type]

    def _access_allowed(self, chat: ChatConfig | None, username: str | None) -> bool:
        private_users = chat.private_users if chat and chat.private_users is not None else None
        allowed = [*(private_users or self._config.private_users), *self._config.admin_users]
        return _includes_user(allowed, username or "without_username")

    def find_agent(self, agent_name: str | None = None, bot_name: str | None = None) -> ChatConfig | None:
        for chat in self.config.chats:
            if agent_name and chat.agent_name == agent_name:
                return chat
            if bot_name and chat.bot_name == bot_name:
                return chat
        return None

    def find_chat(self, message: IncomingMessage) -> ChatConfig | None:
        """Resolve the chat configuration for a message, or None if not allowed."""
        config = self.config
        chat = next((c for c in config.chats if c.matches_id(message.chat_id)), None)

        if chat is None:
            chat = next((c for c in config.chats if c.bot_name and c.bot_name == message.bot_id), None)
            if chat and message.is_private and not self._access_allowed(chat, message.username):
                return None

        if chat is None:
            if not message.is_private:
                logger.warning("chat_not_whitelisted", chat_id=message.chat_id, title=message.chat_title)
                return None
            default = self.default_chat()
            if not self._access_allowed(default, message.username):
                return None
            user_chat = next(
                (c for c in config.chats if c.username and c.username == message.username), None
            )
            chat = user_chat or default

        if chat is None:
            return None
        return self._merge_default(chat)

    def default_chat(self) -> ChatConfig | None:
        return next((c for c in self._config.chats if c.name == "default"), None)

    def _merge_default(self, chat: ChatConfig) -> ChatConfig:
        default = self.default_chat()
        if default is None or default is chat:
            return chat
        chat_params = {
            **default.chat_params.model_dump(exclude_unset=True),
            **chat.chat_params.model_dump(exclude_unset=True),
        }
        completion_params = {
            **default.completion_params.model_dump(exclude_unset=True),
            **chat.completion_params.model_dump(exclude_unset=True),
        }
        return chat.model_copy(
            update={
                "chat_params": ChatParams(**chat_params),
                "completion_params": CompletionParams(**completion_params),
            }
        )

    def update_chat_params(self, chat_id: int, username: str | None, params: dict) -> ChatConfig:
        """Merge params into the stored chat, creating a private chat entry if needed."""
        chats = self.config.chats
        index = next((i for i, c in enumerate(chats) if c.matches_id(chat_id)), None)
        if index is None and username:
            index = next((i for i, c in enumerate(chats) if c.username == username), None)
        if index is None:
            chats.append(ChatConfig(name=f"Private {username or 'without_username'}", username=username))
            index = len(chats) - 1
        chat = chats[index]
        merged = {**chat.chat_params.model_dump(exclude_unset=True), **params}
        chat.chat_params = ChatParams(**merged)
        self._save_chat_params(index, chat)
        return chat
