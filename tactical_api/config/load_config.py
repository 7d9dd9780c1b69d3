# load_config.py
import logging
import os
import re

import yaml
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

_ENV_PATTERN = re.compile(r"\$\{([^:}]+)(?::([^}]*))?\}")


def load_server_config(path=None):
    if path is None:
        base_dir = os.path.dirname(__file__)
        path = os.getenv("TACTICAL_CONFIG") or os.path.join(base_dir, "server_config.yaml")

    with open(path, "r") as f:
        config = yaml.safe_load(f) or {}

    expanded_config = _expand_env_vars(config)
    return expanded_config


def _expand_env_vars(config):
    if isinstance(config, dict):
        return {k: _expand_env_vars(v) for k, v in config.items()}
    elif isinstance(config, list):
        return [_expand_env_vars(i) for i in config]
    elif isinstance(config, str):
        match = _ENV_PATTERN.fullmatch(config)
        if match:
            env_key, default = match.groups()
            value = os.getenv(env_key, default)
            if value is None:
                logger.warning(f"[CONFIG] Environment variable '{env_key}' is not set.")
            return value
    return config


def data_paths(config):
    paths = config.get("paths", {})
    data_dir = os.path.abspath(paths.get("data_dir") or "dataForWeb")
    return {
        "data_dir": data_dir,
        "csv_dir": os.path.join(data_dir, paths.get("csv_subdir", "csv")),
        "image_dir": os.path.join(data_dir, paths.get("image_subdir", "image")),
        "detected_dir": os.path.join(data_dir, paths.get("detected_subdir", "detected")),
        "team_drones_file": os.path.join(data_dir, paths.get("team_drones_file", "team-drones.json")),
        "cameras_file": os.path.join(data_dir, paths.get("cameras_file", "cameras.json")),
    }


def as_bool(value, default=False):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")
