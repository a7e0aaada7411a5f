"""
AWS Secrets Manager fallback for gateway credentials.

Environment variables win; the secret named by SECRETS_MANAGER_SECRET_ID is
consulted only for keys the environment does not set. Nothing is read
unless that variable is configured.
"""
import json
import os
from functools import lru_cache
from typing import Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from app.core.logging import get_logger

logger = get_logger(__name__)


@lru_cache(maxsize=1)
def get_secrets_manager_client():
    """Get cached Secrets Manager client"""
    return boto3.client("secretsmanager", region_name=os.getenv("AWS_DEFAULT_REGION", "af-south-1"))


@lru_cache(maxsize=1)
def load_secrets_from_aws() -> Dict[str, str]:
    secret_id = os.getenv("SECRETS_MANAGER_SECRET_ID")
    if not secret_id:
        return {}
    try:
        response = get_secrets_manager_client().get_secret_value(SecretId=secret_id)
        secrets = json.loads(response["SecretString"])
    except (BotoCoreError, ClientError, KeyError, ValueError) as e:
        logger.warning("secrets_load_failed", secret_id=secret_id, error=str(e))
        return {}
    logger.info("secrets_loaded", secret_id=secret_id, count=len(secrets))
    return secrets


def refresh_secrets() -> None:
    """Drop cached secrets so the next lookup sees a rotated value."""
    load_secrets_from_aws.cache_clear()
    logger.info("secrets_cache_cleared")


def get_config_value(key: str, default: Optional[str] = None) -> Optional[str]:
    """
    Get configuration value with fallback priority:
    1. Environment variable
    2. AWS Secrets Manager
    3. Default value
    """
    value = os.getenv(key)
    if value is not None:
        return value

    value = load_secrets_from_aws().get(key)
    if value is not None:
        return value

    return default
