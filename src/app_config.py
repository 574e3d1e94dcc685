"""Application configuration module for the synchronization engine."""
import logging
import os
import sys
from dataclasses import dataclass
from typing import Dict, Any, Optional

import yaml
from dotenv import load_dotenv

from src.logging_config import setup_logger
from src.translatr_client import DEFAULT_SERVER_URL


class ConfigError(Exception):
    """Raised when the configuration cannot support a run."""


@dataclass
class AppConfig:
    """Application configuration dataclass."""
    # Core paths
    project_root: str
    source_file: str
    output_dir: str
    cache_dir: str

    # Service
    server_url: str
    api_key: Optional[str]

    # Network behaviour
    timeout_seconds: int
    max_retries: int
    poll_max_wait_seconds: int
    max_requests_per_minute: int

    # Run behaviour
    fail_on_error: bool
    dry_run: bool


def _compute_project_root() -> str:
    """Compute the project root directory."""
    script_real_path = os.path.realpath(__file__)
    script_dir = os.path.dirname(script_real_path)
    return os.path.abspath(os.path.join(script_dir, os.pardir))


def _load_dotenv_files(project_root: str) -> None:
    """Load .env files from project root or docker directory."""
    dotenv_path_project_root = os.path.join(project_root, '.env')
    dotenv_path_docker_dir = os.path.join(project_root, 'docker', '.env')

    if os.path.exists(dotenv_path_project_root):
        load_dotenv(dotenv_path_project_root)
    elif os.path.exists(dotenv_path_docker_dir):
        load_dotenv(dotenv_path_docker_dir)


def _load_yaml_config(project_root: str) -> Dict[str, Any]:
    """Load the YAML configuration file. Problems fall back to defaults with a warning."""
    default_config_path = os.path.join(project_root, 'config.yaml')
    config_file = os.environ.get('TRANSLATR_CONFIG_FILE', default_config_path)

    if not os.path.isabs(config_file):
        config_file = os.path.abspath(config_file)

    config = {}
    try:
        if not os.path.exists(config_file):
            print(f"Warning: Configuration file '{config_file}' not found. Using default configuration.",
                  file=sys.stderr)
            print(f"Tip: Create a config.yaml file in '{project_root}' or set TRANSLATR_CONFIG_FILE environment variable.",
                  file=sys.stderr)
            return config

        if not os.access(config_file, os.R_OK):
            print(f"Error: Configuration file '{config_file}' exists but is not readable. Check file permissions.",
                  file=sys.stderr)
            return config

        with open(config_file, 'r', encoding='utf-8') as config_file_stream:
            loaded_config = yaml.safe_load(config_file_stream)
            if loaded_config is None:
                print(f"Warning: Configuration file '{config_file}' is empty. Using default configuration.",
                      file=sys.stderr)
            elif isinstance(loaded_config, dict):
                config = loaded_config
            else:
                print(f"Error: Configuration file '{config_file}' must contain a YAML dictionary. Using defaults.",
                      file=sys.stderr)

    except yaml.YAMLError as e:
        print(f"Error: Invalid YAML in configuration file '{config_file}': {e}", file=sys.stderr)
        print("Please check your YAML syntax. Using default configuration.", file=sys.stderr)
    except (OSError, IOError) as e:
        print(f"Error: Could not read configuration file '{config_file}': {e}", file=sys.stderr)
        print("Using default configuration.", file=sys.stderr)

    return config


def _setup_logger_from_config(config: Dict[str, Any]) -> logging.Logger:
    """Set up logger based on configuration."""
    log_config = config.get('logging', {})
    log_level_str = log_config.get('log_level', 'INFO').upper()
    log_file_path = log_config.get('log_file_path', 'logs/translatr_sync.log')
    log_to_console = log_config.get('log_to_console', True)
    return setup_logger(log_level_str, log_file_path, log_to_console)


def _log_dotenv_status(logger: logging.Logger, project_root: str) -> None:
    """Log the status of .env file loading."""
    dotenv_path_project_root = os.path.join(project_root, '.env')
    dotenv_path_docker_dir = os.path.join(project_root, 'docker', '.env')

    if os.path.exists(dotenv_path_project_root):
        logger.debug("Loaded environment variables from: %s", dotenv_path_project_root)
    elif os.path.exists(dotenv_path_docker_dir):
        logger.debug("Loaded environment variables from: %s", dotenv_path_docker_dir)
    else:
        logger.debug(
            "No .env file found in project root ('%s') or in docker/ ('%s'). Relying on system environment variables if any.",
            dotenv_path_project_root,
            dotenv_path_docker_dir
        )


def _resolve_path(project_root: str, path: str) -> str:
    if os.path.isabs(path):
        return path
    return os.path.abspath(os.path.join(project_root, path))


def _resolve_api_key(dry_run: bool, logger: logging.Logger) -> Optional[str]:
    """Read the API key from the environment. Only a dry run may go without one."""
    api_key = os.environ.get('TRANSLATR_API_KEY')
    if api_key:
        return api_key
    if dry_run:
        logger.debug("TRANSLATR_API_KEY not set; not needed for a dry run.")
        return None
    logger.critical("CRITICAL: TRANSLATR_API_KEY environment variable not found.")
    logger.critical("Please set TRANSLATR_API_KEY or enable dry_run mode in configuration.")
    raise ConfigError("TRANSLATR_API_KEY is required")


def load_app_config() -> AppConfig:
    """
    Load application configuration from YAML file and environment variables.

    Relative paths in the configuration are resolved against the project root,
    which is the ``project_dir`` setting if present.

    Returns:
        AppConfig: The loaded application configuration.

    Raises:
        ConfigError: If the API key is missing outside of a dry run.
    """
    project_root = _compute_project_root()

    _load_dotenv_files(project_root)
    config = _load_yaml_config(project_root)

    logger = _setup_logger_from_config(config)
    _log_dotenv_status(logger, project_root)

    target_root = _resolve_path(project_root, config.get('project_dir', project_root))

    dry_run = bool(config.get('dry_run', False))
    server_url = os.environ.get('TRANSLATR_SERVER_URL', config.get('server_url', DEFAULT_SERVER_URL))

    return AppConfig(
        project_root=target_root,
        source_file=_resolve_path(target_root, config.get('source_file', 'src/main/res/values/strings.xml')),
        output_dir=_resolve_path(target_root, config.get('output_dir', 'src/main/res')),
        cache_dir=_resolve_path(target_root, config.get('cache_dir', 'build/translatr')),
        server_url=server_url,
        api_key=_resolve_api_key(dry_run, logger),
        timeout_seconds=int(config.get('timeout_seconds', 60)),
        max_retries=int(config.get('max_retries', 3)),
        poll_max_wait_seconds=int(config.get('poll_max_wait_seconds', 180)),
        max_requests_per_minute=int(config.get('max_requests_per_minute', 60)),
        fail_on_error=bool(config.get('fail_on_error', False)),
        dry_run=dry_run,
    )
