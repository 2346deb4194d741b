from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path

# Environment variable names for secrets
ENV_BOT_TOKEN = "CHATRELAY_BOT_TOKEN"
ENV_GOOGLE_API_KEY = "CHATRELAY_GOOGLE_API_KEY"

LOCAL_CONFIG_NAME = Path(".chatrelay") / "chatrelay.toml"
HOME_CONFIG_PATH = Path.home() / ".chatrelay" / "chatrelay.toml"

DEFAULT_CHAT_MODEL = "gemini-3-pro-preview"
DEFAULT_IMAGE_MODEL = "gemini-3-pro-image-preview"
DEFAULT_SUMMARIZE_MODEL = "gemini-2.5-pro"
DEFAULT_DB_NAME = "telegram_log.db"
DEFAULT_MEDIA_GROUP_DEBOUNCE_S = 1.0
DEFAULT_HISTORY_DEPTH = 15
DEFAULT_FILE_CACHE_SIZE = 100
DEFAULT_MAX_UPLOAD_BYTES = 100 * 1024 * 1024


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class RelaySettings:
    bot_token: str
    google_api_key: str
    db_path: Path
    chat_model: str = DEFAULT_CHAT_MODEL
    image_model: str = DEFAULT_IMAGE_MODEL
    summarize_model: str = DEFAULT_SUMMARIZE_MODEL
    allowed_chat_ids: frozenset[int] = frozenset()
    trusted_user_ids: frozenset[int] = frozenset()
    media_group_debounce_s: float = DEFAULT_MEDIA_GROUP_DEBOUNCE_S
    history_depth: int = DEFAULT_HISTORY_DEPTH
    file_cache_size: int = DEFAULT_FILE_CACHE_SIZE
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES


def _config_candidates() -> list[Path]:
    candidates = [Path.cwd() / LOCAL_CONFIG_NAME, HOME_CONFIG_PATH]
    if candidates[0] == candidates[1]:
        return [candidates[0]]
    return candidates


def _read_config(cfg_path: Path) -> dict:
    try:
        raw = cfg_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigError(f"Missing config file {cfg_path}.") from None
    except OSError as e:
        raise ConfigError(f"Failed to read config file {cfg_path}: {e}") from e
    try:
        return tomllib.loads(raw)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Malformed TOML in {cfg_path}: {e}") from None


def load_config(path: str | Path | None = None) -> tuple[dict, Path]:
    if path:
        cfg_path = Path(path).expanduser()
        return _read_config(cfg_path), cfg_path

    for candidate in _config_candidates():
        if candidate.is_file():
            return _read_config(candidate), candidate

    raise ConfigError("Missing chatrelay config.")


def _get_secret(config: dict, config_path: Path, *, key: str, env: str) -> str:
    env_value = os.environ.get(env)
    if env_value and env_value.strip():
        return env_value.strip()

    try:
        value = config[key]
    except KeyError:
        raise ConfigError(
            f"Missing `{key}`. Set {env} environment variable "
            f"or add `{key}` to {config_path}."
        ) from None

    if not isinstance(value, str) or not value.strip():
        raise ConfigError(
            f"Invalid `{key}` in {config_path}; expected a non-empty string."
        )
    return value.strip()


def get_bot_token(config: dict, config_path: Path) -> str:
    """Get bot token from environment variable or config file.

    Environment variable CHATRELAY_BOT_TOKEN takes precedence over config file.
    """
    return _get_secret(config, config_path, key="bot_token", env=ENV_BOT_TOKEN)


def get_google_api_key(config: dict, config_path: Path) -> str:
    return _get_secret(
        config, config_path, key="google_api_key", env=ENV_GOOGLE_API_KEY
    )


def _get_str(config: dict, config_path: Path, key: str, default: str) -> str:
    value = config.get(key, default)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(
            f"Invalid `{key}` in {config_path}; expected a non-empty string."
        )
    return value.strip()


def _get_id_set(config: dict, config_path: Path, key: str) -> frozenset[int]:
    value = config.get(key, [])
    if not isinstance(value, list):
        raise ConfigError(
            f"Invalid `{key}` in {config_path}; expected a list of integers."
        )
    ids: set[int] = set()
    for item in value:
        if isinstance(item, bool) or not isinstance(item, int):
            raise ConfigError(
                f"Invalid `{key}` in {config_path}; expected a list of integers."
            )
        ids.add(item)
    return frozenset(ids)


def _get_positive(
    config: dict, config_path: Path, key: str, default: float, *, kind: type
) -> float:
    value = config.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"Invalid `{key}` in {config_path}; expected a number.")
    if kind is int and not isinstance(value, int):
        raise ConfigError(f"Invalid `{key}` in {config_path}; expected an integer.")
    if value <= 0:
        raise ConfigError(f"Invalid `{key}` in {config_path}; expected a positive value.")
    return value


def parse_settings(config: dict, config_path: Path) -> RelaySettings:
    db_value = config.get("db_path")
    if db_value is None:
        db_path = config_path.with_name(DEFAULT_DB_NAME)
    elif isinstance(db_value, str) and db_value.strip():
        db_path = Path(db_value.strip()).expanduser()
    else:
        raise ConfigError(
            f"Invalid `db_path` in {config_path}; expected a non-empty string."
        )
    return RelaySettings(
        bot_token=get_bot_token(config, config_path),
        google_api_key=get_google_api_key(config, config_path),
        db_path=db_path,
        chat_model=_get_str(config, config_path, "chat_model", DEFAULT_CHAT_MODEL),
        image_model=_get_str(
            config, config_path, "image_model", DEFAULT_IMAGE_MODEL
        ),
        summarize_model=_get_str(
            config, config_path, "summarize_model", DEFAULT_SUMMARIZE_MODEL
        ),
        allowed_chat_ids=_get_id_set(config, config_path, "allowed_chat_ids"),
        trusted_user_ids=_get_id_set(config, config_path, "trusted_user_ids"),
        media_group_debounce_s=float(
            _get_positive(
                config,
                config_path,
                "media_group_debounce_s",
                DEFAULT_MEDIA_GROUP_DEBOUNCE_S,
                kind=float,
            )
        ),
        history_depth=int(
            _get_positive(
                config, config_path, "history_depth", DEFAULT_HISTORY_DEPTH, kind=int
            )
        ),
        file_cache_size=int(
            _get_positive(
                config,
                config_path,
                "file_cache_size",
                DEFAULT_FILE_CACHE_SIZE,
                kind=int,
            )
        ),
        max_upload_bytes=int(
            _get_positive(
                config,
                config_path,
                "max_upload_bytes",
                DEFAULT_MAX_UPLOAD_BYTES,
                kind=int,
            )
        ),
    )


def load_settings(path: str | Path | None = None) -> tuple[RelaySettings, Path]:
    config, config_path = load_config(path)
    return parse_settings(config, config_path), config_path
