"""
Configuration Module

Loads the YAML configuration, merges it over the built-in defaults and clamps
scanner settings into their allowed ranges.
"""

import copy
import logging
import os
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = 'config/config.yaml'

# (min, max) for numeric settings that can be edited by administrators
SETTINGS_LIMITS = {
    ('matching', 'match_threshold'): (0.5, 0.99),
    ('matching', 'confidence_gap'): (0.0, 0.5),
    ('face_detection', 'min_confidence'): (0.1, 1.0),
    ('face_detection', 'max_faces'): (1, 20),
    ('face_detection', 'quality_threshold'): (0.1, 1.0),
    ('face_detection', 'aspect_ratio_min'): (0.5, 1.0),
    ('face_detection', 'aspect_ratio_max'): (1.0, 2.0),
    ('scanner', 'scanning_interval_ms'): (50, 1000),
    ('scanner', 'registration_cooldown_seconds'): (1, 30),
    ('scanner', 'processing_timeout_seconds'): (1, 60),
    ('scanner', 'banned_display_seconds'): (0.5, 15),
    ('scanner', 'default_display_seconds'): (0.5, 15),
    ('sync', 'interval_seconds'): (10, 3600),
    ('sync', 'timeout_seconds'): (1, 120),
    ('attendance', 'cooldown_hours'): (0, 48),
}


def get_default_config() -> Dict[str, Any]:
    """Get default configuration."""
    return {
        'face_detection': {
            'method': 'haar',
            'detector_backend': 'opencv',
            'min_confidence': 0.5,
            'min_face_size': 80,
            'max_faces': 5,
            'quality_threshold': 0.45,
            'aspect_ratio_min': 0.75,
            'aspect_ratio_max': 1.3,
            'blur_threshold': 100.0,
            'min_brightness': 50,
            'max_brightness': 200,
            'enhance_on_miss': True
        },
        'descriptor': {
            'model': 'face_recognition',
            'normalization': False,
            'num_jitters': 1
        },
        'matching': {
            'backend': 'linear',
            'match_threshold': 0.70,
            'strong_match_distance': 0.145,
            'possible_match_similarity': 0.50,
            'confidence_gap': 0.10
        },
        'cache': {
            'embedding_expiry_seconds': 24 * 60 * 60,
            'cache_version': '1.0',
            'local_max_entries': 50,
            'local_max_age_seconds': 600,
            'local_match_window_seconds': 300,
            'local_match_similarity': 0.60,
            'recent_capture_window_seconds': 30,
            'recent_capture_similarity': 0.90
        },
        'sync': {
            'interval_seconds': 120,
            'batch_duplicate_similarity': 0.70,
            'remote_duplicate_similarity': 0.80,
            'min_image_length': 5000,
            'max_image_length': 2000000,
            'item_delay_seconds': 0.1,
            'timeout_seconds': 20
        },
        'scanner': {
            'scanning_interval_ms': 100,
            'registration_cooldown_seconds': 5,
            'processing_timeout_seconds': 15,
            'banned_display_seconds': 5,
            'default_display_seconds': 3,
            'auto_register': True
        },
        'attendance': {
            'cooldown_hours': 8
        },
        'storage': {
            'data_dir': 'data',
            'local_backend': 'json',
            'kv_file': 'data/facecheck_store.json',
            'sqlite_file': 'data/facecheck.db',
            'photos_dir': 'data/face_photos',
            'index_path': 'data/descriptor_index'
        },
        'backend': {
            'url': None,
            'key': None,
            'organization_id': None
        }
    }


# Storage files placed under storage.data_dir unless given explicitly
STORAGE_FILES = {
    'kv_file': 'facecheck_store.json',
    'sqlite_file': 'facecheck.db',
    'photos_dir': 'face_photos',
    'index_path': 'descriptor_index',
}


def resolve_storage_paths(config: Dict[str, Any],
                          explicit: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Place storage files under the configured data directory.

    Args:
        config: Configuration dictionary (modified in place)
        explicit: Storage settings given by the user; paths set there are kept

    Returns:
        The same configuration dictionary
    """
    storage = config.setdefault('storage', {})
    explicit = explicit if isinstance(explicit, dict) else {}
    data_dir = storage.get('data_dir') or 'data'

    for key, filename in STORAGE_FILES.items():
        if not explicit.get(key):
            storage[key] = os.path.join(data_dir, filename)
    return config


def merge_config(base: Dict[str, Any], override: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Recursively merge an override dictionary into a copy of base.

    Args:
        base: Base configuration
        override: Values taking precedence over base

    Returns:
        Merged configuration
    """
    merged = copy.deepcopy(base)
    if not override:
        return merged

    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = value
    return merged


def _apply_environment(config: Dict[str, Any]) -> None:
    backend = config.setdefault('backend', {})
    if os.getenv('SUPABASE_URL'):
        backend['url'] = os.getenv('SUPABASE_URL')
    if os.getenv('SUPABASE_KEY'):
        backend['key'] = os.getenv('SUPABASE_KEY')
    if os.getenv('FACECHECK_ORGANIZATION_ID'):
        backend['organization_id'] = os.getenv('FACECHECK_ORGANIZATION_ID')


def validate_settings(config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Clamp editable numeric settings into their allowed ranges.

    Args:
        config: Configuration dictionary (modified in place)

    Returns:
        The same configuration dictionary
    """
    for (section, key), (low, high) in SETTINGS_LIMITS.items():
        values = config.get(section)
        if not isinstance(values, dict) or key not in values:
            continue

        value = values[key]
        try:
            number = float(value)
        except (TypeError, ValueError):
            default = get_default_config()[section][key]
            logger.warning(f"Invalid value for {section}.{key}: {value!r}, using {default}")
            values[key] = default
            continue

        clamped = min(max(number, low), high)
        if clamped != number:
            logger.warning(f"{section}.{key}={value} out of range [{low}, {high}], clamped to {clamped}")
        if isinstance(value, int) and not isinstance(value, bool) and float(clamped).is_integer():
            clamped = int(clamped)
        values[key] = clamped

    return config


def load_config(config_path: str = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """
    Load configuration from a YAML file.

    A missing or unreadable file falls back to the defaults. Storage files
    live under storage.data_dir unless their paths are set. Backend
    credentials can be supplied through SUPABASE_URL, SUPABASE_KEY and
    FACECHECK_ORGANIZATION_ID.

    Args:
        config_path: Path to configuration file

    Returns:
        Complete configuration dictionary
    """
    file_config = None
    try:
        with open(config_path, 'r') as f:
            file_config = yaml.safe_load(f)
        logger.info(f"Configuration loaded from {config_path}")
    except FileNotFoundError:
        logger.warning(f"Config file {config_path} not found, using defaults")
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to load config: {e}")

    if file_config is not None and not isinstance(file_config, dict):
        logger.error(f"Config file {config_path} does not contain a mapping, using defaults")
        file_config = None

    config = merge_config(get_default_config(), file_config)
    resolve_storage_paths(config, (file_config or {}).get('storage'))
    _apply_environment(config)
    return validate_settings(config)
