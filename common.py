"""
Perp Funding Arbitrage Bot - Common Module

Shared configuration and logging utilities used by the runner scripts
and the arbitrage package.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, TypedDict

import yaml
from dotenv import load_dotenv

# -----------------------------------------------------------------------------
# Type Definitions
# -----------------------------------------------------------------------------

class Config(TypedDict, total=False):
    trading: Dict[str, Any]
    fees: Dict[str, Any]
    state: Dict[str, Any]
    retry: Dict[str, Any]
    poll: Dict[str, Any]
    venues: List[Dict[str, Any]]
    wallet: Dict[str, Any]
    logging: Dict[str, Any]


# -----------------------------------------------------------------------------
# Module-level Logger
# -----------------------------------------------------------------------------

LOGGER_NAMESPACE = "perp_arb"

logger = logging.getLogger(LOGGER_NAMESPACE)


# -----------------------------------------------------------------------------
# Configuration Management
# -----------------------------------------------------------------------------

def load_config(config_path: Optional[str] = None) -> Config:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to config.yaml in project root.

    Returns:
        Config dictionary with all settings.

    Raises:
        FileNotFoundError: If config file does not exist.
        yaml.YAMLError: If config file is malformed.
    """
    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"
    else:
        config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}

    logger.debug("Configuration loaded from %s", config_path)
    return config


def load_environment(env_path: Optional[str] = None) -> bool:
    """
    Load credentials from a .env file into the process environment.

    Variables already set in the environment win over the file.

    Returns:
        True if a .env file was found and loaded.
    """
    loaded = load_dotenv(dotenv_path=env_path, override=False)
    if loaded:
        logger.debug("Environment loaded from %s", env_path or ".env")
    return loaded


def get_credential(name: str) -> Optional[str]:
    """Read a credential from the environment, treating blanks as missing."""
    value = os.environ.get(name, "").strip()
    return value or None


def setup_logging(config: Optional[Config] = None, debug: bool = False) -> logging.Logger:
    """
    Configure centralized logging for the arbitrage bot.

    Args:
        config: Configuration dictionary. If None, uses defaults.
        debug: Force DEBUG level regardless of config.

    Returns:
        Configured root logger for the perp_arb namespace.
    """
    if config is None:
        log_level = "INFO"
        log_format = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
        date_format = "%Y-%m-%d %H:%M:%S"
    else:
        log_cfg = config.get("logging", {}) or {}
        log_level = log_cfg.get("level", "INFO")
        log_format = log_cfg.get(
            "format", "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
        )
        date_format = log_cfg.get("date_format", "%Y-%m-%d %H:%M:%S")

    if debug:
        log_level = "DEBUG"

    root_logger = logging.getLogger(LOGGER_NAMESPACE)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # Remove existing handlers to avoid duplicates
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    formatter = logging.Formatter(log_format, datefmt=date_format)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    return root_logger


# -----------------------------------------------------------------------------
# Module Initialization
# -----------------------------------------------------------------------------

def init_module(
    config_path: Optional[str] = None,
    debug: bool = False,
) -> Tuple[Config, logging.Logger]:
    """
    Initialize configuration, environment and logging in one call.

    Args:
        config_path: Optional path to config file.
        debug: Enable DEBUG logging.

    Returns:
        Tuple of (config, logger).
    """
    load_environment()
    config = load_config(config_path)
    module_logger = setup_logging(config, debug=debug)
    return config, module_logger


__all__ = [
    "Config",
    "LOGGER_NAMESPACE",
    "load_config",
    "load_environment",
    "get_credential",
    "setup_logging",
    "init_module",
    "logger",
]
