"""Application configuration.

The configuration file is ``config.json`` with a ``sharepoint`` section::

    {
        "sharepoint": {
            "site_url": "https://contoso.sharepoint.com/sites/Transport",
            "tenant_id": "...",
            "client_id": "...",
            "client_secret": "..."
        },
        "lists": {"servizi_giorno": "LOREAPP_SERVIZI"}
    }
"""

import json
import logging
import typing as t
from pathlib import Path

from platformdirs import user_config_dir
from pydantic import BaseModel, Field, ValidationError

from sharepoint_oauth.exceptions import ConfigFileError

logger = logging.getLogger(__name__)

APP_NAME = 'sharepoint-transport'
CONFIG_FILE_NAME = 'config.json'
SAVED_CONFIG_FILE_NAME = 'sharepoint_config.json'
CREDENTIALS_FILE_NAME = 'credentials.json'


class SharePointSection(BaseModel):
    site_url: str
    tenant_id: t.Optional[str] = None
    client_id: t.Optional[str] = None
    client_secret: t.Optional[str] = None


class AppConfig(BaseModel):
    sharepoint: SharePointSection
    lists: t.Dict[str, str] = Field(default_factory=dict)


class CoordinatorSettings(BaseModel):
    """Timing of the authentication coordinator, in seconds."""

    poll_interval: float = 2.0
    max_poll_attempts: int = 60
    close_grace_delay: float = 1.5
    window_settle_delay: float = 0.5
    handoff_ack_timeout: float = 1.0


def get_config_dir() -> Path:
    """Get/create the per-user configuration directory."""
    path = Path(user_config_dir(APP_NAME))
    path.mkdir(parents=True, exist_ok=True)
    return path


def default_credentials_path() -> Path:
    return get_config_dir() / CREDENTIALS_FILE_NAME


def candidate_config_paths() -> t.List[Path]:
    """Locations searched for ``config.json``, in order."""
    cwd = Path.cwd()
    return [cwd / CONFIG_FILE_NAME, cwd.parent / CONFIG_FILE_NAME, get_config_dir() / CONFIG_FILE_NAME]


def load_config_file(paths: t.Optional[t.Sequence[t.Union[str, Path]]] = None) -> AppConfig:
    """Load the first readable configuration file.

    Args:
        paths: Candidate locations; defaults to :func:`candidate_config_paths`.

    Returns:
        Parsed configuration.

    Raises:
        ConfigFileError: If no candidate is readable, or the first readable
            one is not a valid configuration.
    """
    last_error: t.Optional[str] = None
    for path in [Path(p) for p in (paths or candidate_config_paths())]:
        try:
            contents = path.read_text(encoding='utf-8')
        except OSError as e:
            logger.debug('No configuration at %s: %s', path, e)
            last_error = f'Cannot read {path}: {e}'
            continue

        try:
            config = AppConfig.model_validate_json(contents)
        except ValidationError as e:
            raise ConfigFileError(f'Invalid configuration in {path}: {e}') from e

        logger.info('Loaded configuration from %s', path)
        return config

    raise ConfigFileError(last_error or 'config.json not found')


def save_config(config: AppConfig, path: t.Optional[Path] = None) -> Path:
    """Persist manually entered configuration for later sessions."""
    path = path or get_config_dir() / SAVED_CONFIG_FILE_NAME
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(config.model_dump_json(indent=2), encoding='utf-8')
    logger.info('Saved configuration to %s', path)
    return path


def load_saved_config(path: t.Optional[Path] = None) -> t.Optional[AppConfig]:
    """Load configuration saved by :func:`save_config`, if any."""
    path = path or get_config_dir() / SAVED_CONFIG_FILE_NAME
    try:
        return AppConfig.model_validate(json.loads(path.read_text(encoding='utf-8')))
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        logger.warning('Ignoring saved configuration at %s: %s', path, e)
        return None


def resolve_config(paths: t.Optional[t.Sequence[t.Union[str, Path]]] = None) -> t.Optional[AppConfig]:
    """Load ``config.json`` and fall back to the saved configuration.

    A file that exists but lacks tenant or client ID also falls back, and
    is returned as-is when nothing was saved.
    """
    config: t.Optional[AppConfig] = None
    try:
        config = load_config_file(paths)
    except ConfigFileError as e:
        logger.info('Configuration file unavailable: %s', e)
    else:
        if config.sharepoint.tenant_id and config.sharepoint.client_id:
            return config
        logger.info('Configuration file lacks tenant or client ID')

    return load_saved_config() or config
