from __future__ import annotations

import logging
import sys
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

# Environment overrides referenced through oc.env in config.yaml
load_dotenv()

CONFIG_PATH = Path(__file__).resolve().parent / "config.yaml"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def make_runtime_config(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    """
    Build the runtime configuration from the packaged defaults.

    Args:
        overrides: Nested mapping merged on top of the defaults. Keys that do not
            exist in config.yaml are rejected.

    Returns:
        A struct-mode DictConfig; interpolations (including oc.env lookups)
        resolve on access.
    """
    base_container = OmegaConf.to_container(_load_default_config(), resolve=False)
    base = OmegaConf.create(base_container)
    OmegaConf.set_struct(base, True)

    if not overrides:
        return base

    override_config = OmegaConf.create(overrides)
    merged = DictConfig(OmegaConf.merge(base, override_config))
    return merged


def configure_logging(level: str = "INFO") -> None:
    """Attach a single stdout handler to the package logger."""
    package_logger = logging.getLogger("image_convert_backend")
    package_logger.setLevel(level.upper())
    if not package_logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        package_logger.addHandler(handler)
