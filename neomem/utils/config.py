"""
Configuration management for the graph store, Bedrock providers and memory engine settings.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


class ConfigError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


@dataclass
class BedrockLLMConfig:
    """Configuration for Amazon Bedrock LLM service."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    retry_attempts: int
    retry_delay: float


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    retry_attempts: int
    retry_delay: float


@dataclass
class Neo4jConfig:
    """Configuration for the Neo4j graph database."""
    uri: str
    username: str
    password: str
    database: str


@dataclass
class SearchConfig:
    """Configuration for hybrid search."""
    candidate_multiplier: int
    firing_threshold: float
    vector_min_score: float


@dataclass
class ExtractionConfig:
    """Configuration for LLM entity extraction."""
    enabled: bool
    on_capture: bool
    max_workers: int


@dataclass
class CaptureConfig:
    """Configuration for memory capture."""
    auto_capture: bool
    capture_assistant: bool
    dedup_threshold: float


@dataclass
class SleepCycleConfig:
    """Configuration for the sleep cycle consolidation job."""
    dedup_threshold: float
    pareto_percentile: float
    promotion_min_age_days: float
    decay_retention_threshold: float
    decay_base_half_life_days: float
    extraction_batch_size: int
    extraction_delay_ms: int
    retry_failed_extractions: bool


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    bedrock_llm: BedrockLLMConfig
    bedrock_embed: BedrockEmbedConfig
    neo4j: Neo4jConfig
    search: SearchConfig
    extraction: ExtractionConfig
    capture: CaptureConfig
    sleep_cycle: SleepCycleConfig
    mcp: MCPConfig


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-haiku-20240307-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '2048')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.0')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '0.5')))

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')))

    # Neo4j configuration
    neo4j_config = Neo4jConfig(uri=os.getenv('NEO4J_URI', 'bolt://localhost:7687'),
                               username=os.getenv('NEO4J_USERNAME', 'neo4j'),
                               password=os.getenv('NEO4J_PASSWORD', ''),
                               database=os.getenv('NEO4J_DATABASE', 'neo4j'))

    # Search configuration
    search_config = SearchConfig(candidate_multiplier=int(os.getenv('SEARCH_CANDIDATE_MULTIPLIER', '6')),
                                 firing_threshold=float(os.getenv('SEARCH_FIRING_THRESHOLD', '0.3')),
                                 vector_min_score=float(os.getenv('SEARCH_VECTOR_MIN_SCORE', '0.1')))

    # Extraction configuration
    extraction_config = ExtractionConfig(enabled=_env_bool('EXTRACTION_ENABLED', 'true'),
                                         on_capture=_env_bool('EXTRACTION_ON_CAPTURE', 'true'),
                                         max_workers=int(os.getenv('EXTRACTION_MAX_WORKERS', '2')))

    # Capture configuration
    capture_config = CaptureConfig(auto_capture=_env_bool('MEMORY_AUTO_CAPTURE', 'true'),
                                   capture_assistant=_env_bool('MEMORY_CAPTURE_ASSISTANT', 'false'),
                                   dedup_threshold=float(os.getenv('MEMORY_DEDUP_THRESHOLD', '0.95')))

    # Sleep cycle configuration
    sleep_cycle_config = SleepCycleConfig(
        dedup_threshold=float(os.getenv('SLEEP_DEDUP_THRESHOLD', '0.95')),
        pareto_percentile=float(os.getenv('SLEEP_PARETO_PERCENTILE', '0.2')),
        promotion_min_age_days=float(os.getenv('SLEEP_PROMOTION_MIN_AGE_DAYS', '7')),
        decay_retention_threshold=float(os.getenv('SLEEP_DECAY_RETENTION_THRESHOLD', '0.1')),
        decay_base_half_life_days=float(os.getenv('SLEEP_DECAY_HALF_LIFE_DAYS', '30')),
        extraction_batch_size=int(os.getenv('SLEEP_EXTRACTION_BATCH_SIZE', '50')),
        extraction_delay_ms=int(os.getenv('SLEEP_EXTRACTION_DELAY_MS', '1000')),
        retry_failed_extractions=_env_bool('SLEEP_RETRY_FAILED_EXTRACTIONS', 'false'))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     neo4j=neo4j_config,
                     search=search_config,
                     extraction=extraction_config,
                     capture=capture_config,
                     sleep_cycle=sleep_cycle_config,
                     mcp=mcp_config)


def validate_config(app_config: AppConfig) -> None:
    """Fail fast on configuration the engine cannot start without.

    Args:
        app_config: AppConfig instance to check

    Raises:
        ConfigError: If a required setting is missing or invalid
    """
    missing = []
    if not app_config.neo4j.uri:
        missing.append('NEO4J_URI')
    if not app_config.neo4j.username:
        missing.append('NEO4J_USERNAME')
    if not app_config.neo4j.password:
        missing.append('NEO4J_PASSWORD')
    if not app_config.bedrock_embed.model_id:
        missing.append('BEDROCK_EMBED_MODEL_ID')
    if missing:
        raise ConfigError(f'Missing required configuration: {", ".join(missing)}')

    if app_config.bedrock_embed.dimension <= 0:
        raise ConfigError(f'BEDROCK_EMBED_DIMENSION must be positive, got {app_config.bedrock_embed.dimension}')
    if not 0.0 < app_config.sleep_cycle.pareto_percentile <= 1.0:
        raise ConfigError(f'SLEEP_PARETO_PERCENTILE must be in (0, 1], got {app_config.sleep_cycle.pareto_percentile}')


# Global configuration instance
config = load_config()
