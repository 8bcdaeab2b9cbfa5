"""
Health check utilities for the application.
"""

from typing import Any, Dict, Optional

from .config import AppConfig
from .logging_config import get_logger

logger = get_logger(__name__)


def check_health(app_config: Optional[AppConfig] = None) -> bool:
    """Check the health of all system components.

    Returns:
        True if all components are healthy, False otherwise
    """
    try:
        health_status = get_health_status(app_config)

        # Check if all components are healthy
        all_healthy = all(status.get('healthy', False) for status in health_status.values())

        if all_healthy:
            logger.info('All system components are healthy')
        else:
            logger.warning('Some system components are unhealthy')

        return all_healthy

    except Exception as e:
        logger.error(f'Health check failed: {e}')
        return False


def get_health_status(app_config: Optional[AppConfig] = None) -> Dict[str, Any]:
    """Get detailed health status of all components.

    Returns:
        Dictionary with health status of each component
    """
    if app_config is None:
        from .config import config as app_config

    health_status = {}

    # Check Bedrock LLM
    try:
        from .bedrock_llm import BedrockLLM
        llm_healthy = BedrockLLM(app_config.bedrock_llm).health_check()
        health_status['bedrock_llm'] = {
            'healthy': llm_healthy,
            'service': 'Amazon Bedrock LLM',
            'model': app_config.bedrock_llm.model_id
        }
    except Exception as e:
        health_status['bedrock_llm'] = {'healthy': False, 'service': 'Amazon Bedrock LLM', 'error': str(e)}

    # Check Bedrock Embed
    try:
        from .bedrock_embed import BedrockEmbed
        embed_healthy = BedrockEmbed(app_config.bedrock_embed).health_check()
        health_status['bedrock_embed'] = {
            'healthy': embed_healthy,
            'service': 'Amazon Bedrock Embed',
            'model': app_config.bedrock_embed.model_id
        }
    except Exception as e:
        health_status['bedrock_embed'] = {'healthy': False, 'service': 'Amazon Bedrock Embed', 'error': str(e)}

    # Check vector store
    try:
        from .vector_collections import build_vector_adapter
        vectors_healthy = build_vector_adapter(app_config).health_check()
        health_status['vector_store'] = {
            'healthy': vectors_healthy,
            'service': 'Vector store',
            'backend': app_config.vector_backend
        }
    except Exception as e:
        health_status['vector_store'] = {'healthy': False, 'service': 'Vector store', 'error': str(e)}

    # Check checkpoint store
    try:
        from ..services.checkpoint_store import CheckpointStore
        store = CheckpointStore(app_config.checkpoint)
        try:
            store_healthy = store.health_check()
        finally:
            store.close()
        health_status['checkpoint_store'] = {
            'healthy': store_healthy,
            'service': 'Checkpoint store',
            'path': app_config.checkpoint.db_path
        }
    except Exception as e:
        health_status['checkpoint_store'] = {'healthy': False, 'service': 'Checkpoint store', 'error': str(e)}

    return health_status
