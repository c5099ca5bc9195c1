import os
from pathlib import Path
from typing import Any, Dict

import yaml

from .models import VidcoreConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

# Environment variable -> dotted config path
ENV_OVERRIDES = {
    "VIDCORE_DB": "queue.db_path",
    "VIDCORE_RECORDS_DB": "records.db_path",
    "VIDCORE_FFMPEG": "extractor.ffmpeg_path",
    "AWS_REGION": "storage.region",
    "AWS_S3_BUCKET": "storage.bucket",
    "AWS_SES_FROM_EMAIL": "email.from_address",
}


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def env_overrides(environ: Dict[str, str] = None) -> Dict[str, Any]:
    """Nested dict of the config values set through environment variables."""
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}
    for var, path in ENV_OVERRIDES.items():
        value = environ.get(var)
        if not value:
            continue
        section, key = path.split(".")
        overrides.setdefault(section, {})[key] = value
        # SES lives in the same region as the bucket unless configured apart
        if var == "AWS_REGION":
            overrides.setdefault("email", {})["region"] = value
    return overrides


def resolve_config(cli_args: Dict[str, Any] = None, environ: Dict[str, str] = None) -> VidcoreConfig:
    """
    Resolve config: Default < Local < Environment < CLI
    Returns validated Pydantic VidcoreConfig model.
    """
    cli_args = cli_args or {}

    config_data = load_yaml(DEFAULT_CONFIG_PATH)
    config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))
    config_data = merge_dicts(config_data, env_overrides(environ))

    config = VidcoreConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)
