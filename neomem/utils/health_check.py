"""
Health check utilities for the memory engine.
"""

from typing import Any, Dict, Optional

from .bedrock_embed import BedrockEmbed
from .bedrock_llm import BedrockLLM
from .config import AppConfig
from .logging_config import get_logger
from .neo4j_client import Neo4jClient

logger = get_logger(__name__)


def check_health(app_config: Optional[AppConfig] = None) -> bool:
    """Check the health of all system components.

    Returns:
        True if all components are healthy, False otherwise
    """
    try:
        health_status = get_health_status(app_config)

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
        from .config import config as default_config
        app_config = default_config

    health_status = {}

    # Check Bedrock LLM
    try:
        llm = BedrockLLM(app_config.bedrock_llm)
        health_status['bedrock_llm'] = {
            'healthy': llm.health_check(),
            'service': 'Amazon Bedrock LLM',
            'model': app_config.bedrock_llm.model_id
        }
    except Exception as e:
        health_status['bedrock_llm'] = {'healthy': False, 'service': 'Amazon Bedrock LLM', 'error': str(e)}

    # Check Bedrock Embed
    try:
        embed = BedrockEmbed(app_config.bedrock_embed)
        health_status['bedrock_embed'] = {
            'healthy': embed.health_check(),
            'service': 'Amazon Bedrock Embed',
            'model': app_config.bedrock_embed.model_id
        }
    except Exception as e:
        health_status['bedrock_embed'] = {'healthy': False, 'service': 'Amazon Bedrock Embed', 'error': str(e)}

    # Check Neo4j
    store = None
    try:
        store = Neo4jClient(app_config.neo4j, app_config.bedrock_embed.dimension)
        health_status['neo4j'] = {'healthy': store.health_check(), 'service': 'Neo4j', 'uri': app_config.neo4j.uri}
    except Exception as e:
        health_status['neo4j'] = {'healthy': False, 'service': 'Neo4j', 'error': str(e)}
    finally:
        if store is not None:
            store.close()

    return health_status


def get_system_info(app_config: Optional[AppConfig] = None) -> Dict[str, Any]:
    """Get system information and configuration.

    Returns:
        Dictionary with system information
    """
    if app_config is None:
        from .config import config as default_config
        app_config = default_config

    return {
        'service_name': 'neomem',
        'version': '0.1.0',
        'configuration': {
            'bedrock_llm_model': app_config.bedrock_llm.model_id,
            'bedrock_embed_model': app_config.bedrock_embed.model_id,
            'embedding_dimension': app_config.bedrock_embed.dimension,
            'neo4j_uri': app_config.neo4j.uri,
            'extraction_enabled': app_config.extraction.enabled,
        },
        'health_status': get_health_status(app_config)
    }
