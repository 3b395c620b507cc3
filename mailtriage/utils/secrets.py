"""
API key storage for model providers.

Keys live in the system keyring (Windows Credential Manager, macOS Keychain,
Secret Service on Linux) under the ``mailtriage`` service, one entry per
provider. ``resolve_api_key`` applies the lookup order used at provider
construction: explicit config value, environment variable, keyring.
"""

import logging
import os
from typing import Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

logger = logging.getLogger(__name__)

SERVICE_NAME = "mailtriage"


def _username(provider: str) -> str:
    return f"{provider}_api_key"


def api_key_env(provider: str) -> str:
    """Environment variable consulted for ``provider``, e.g. MAILTRIAGE_GEMINI_API_KEY."""
    return f"MAILTRIAGE_{provider.upper()}_API_KEY"


def get_api_key(provider: str) -> Optional[str]:
    """
    Read the stored key for ``provider``.

    Returns:
        The key, or None when nothing is stored or the keyring backend failed
    """
    try:
        key = keyring.get_password(SERVICE_NAME, _username(provider))
    except KeyringError as e:
        logger.error(f"Keyring lookup for {provider} failed: {e}")
        return None
    if key:
        logger.debug(f"Using {provider} API key from keyring")
    return key


def set_api_key(provider: str, api_key: str) -> bool:
    try:
        keyring.set_password(SERVICE_NAME, _username(provider), api_key)
    except KeyringError as e:
        logger.error(f"Could not store {provider} API key: {e}")
        return False
    logger.info(f"Stored {provider} API key in keyring")
    return True


def delete_api_key(provider: str) -> bool:
    """Remove the stored key. False when there was none or the backend failed."""
    try:
        keyring.delete_password(SERVICE_NAME, _username(provider))
    except PasswordDeleteError:
        logger.warning(f"No {provider} API key stored")
        return False
    except KeyringError as e:
        logger.error(f"Could not delete {provider} API key: {e}")
        return False
    logger.info(f"Deleted {provider} API key from keyring")
    return True


def resolve_api_key(provider: str, explicit: Optional[str] = None) -> Optional[str]:
    """First of: ``explicit``, the provider's environment variable, the keyring."""
    if explicit:
        return explicit
    from_env = os.environ.get(api_key_env(provider))
    if from_env:
        return from_env
    return get_api_key(provider)
