"""Utility functions shared by the chainctl modules."""

import copy
import functools
import logging
import os
import random
import time
from typing import Any, Callable, Dict, Optional, Tuple, Type

import yaml
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

logger = logging.getLogger("chainctl.utils")

# Algorithm tag prefixed to ed25519 public keys
ED25519_TAG = "01"


def write_yaml_file(path: str, data: Dict[str, Any], mode: int = 0o644) -> None:
    """Write a YAML file with the given data.

    The file is written to a temporary sibling first and renamed into place,
    so readers never see a half-written document.

    Args:
        path: Path to the YAML file
        data: Data to write as YAML
        mode: File permissions (default: 0o644)

    Raises:
        OSError: If the file cannot be written
    """
    path = os.path.abspath(str(path))
    tmp_path = f"{path}.tmp"
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(tmp_path, 'w', encoding='utf-8') as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except OSError as e:
        logger.error(f"Failed to write YAML file {path}: {e}")
        raise


def read_yaml_file(path: str) -> Dict[str, Any]:
    """Load a YAML mapping; an empty file reads as ``{}``.

    Raises:
        FileNotFoundError: If the file does not exist
        yaml.YAMLError: If the file is not valid YAML or holds something other than a mapping
    """
    with open(path, 'r', encoding='utf-8') as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.error(f"Invalid YAML in {path}: {e}")
            raise
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise yaml.YAMLError(f"{path} holds a {type(data).__name__}, expected a mapping")
    return data


def merge_dicts(base: Dict[Any, Any], delta: Dict[Any, Any]) -> Dict[Any, Any]:
    """Apply a chainspec-style delta to ``base`` and return the result.

    Nested mappings merge key by key. A ``None`` value in ``delta`` deletes
    the key. Neither argument is modified.
    """
    merged = copy.deepcopy(base)
    for key, change in delta.items():
        if change is None:
            merged.pop(key, None)
        elif isinstance(change, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_dicts(merged[key], change)
        else:
            merged[key] = copy.deepcopy(change)
    return merged


def generate_key_material(rng: Optional[random.Random] = None) -> Tuple[str, str]:
    """Generate a node's ed25519 validator key pair.

    Args:
        rng: Entropy source for the 32-byte seed; OS entropy when omitted

    Returns:
        tuple: (secret key as PKCS8 PEM, public key hex). The public key
        carries the ``01`` algorithm tag used by ed25519 account keys.
    """
    rng = rng or random.SystemRandom()
    seed = bytes(rng.getrandbits(8) for _ in range(32))
    private_key = Ed25519PrivateKey.from_private_bytes(seed)
    secret_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode('ascii')
    public_raw = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return secret_pem, f"{ED25519_TAG}{public_raw.hex()}"


def retry(
    attempts: int = 3,
    delay: float = 0.5,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
):
    """Decorator for retrying a function a fixed number of times.

    Args:
        attempts: Total number of attempts
        delay: Fixed delay between attempts in seconds
        exceptions: Tuple of exceptions to catch and retry on
        sleep: Sleep function, injectable for tests

    Returns:
        Decorated function; the last exception propagates unchanged
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(1, attempts + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt == attempts:
                        raise
                    logger.debug(
                        f"Attempt {attempt}/{attempts} of {func.__name__} failed: {e}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    sleep(delay)
        return wrapper
    return decorator
