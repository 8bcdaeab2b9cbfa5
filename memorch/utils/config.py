"""
Configuration management for AWS services and memory orchestration settings.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


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
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    index_prefix: str
    dimension: int


@dataclass
class CheckpointConfig:
    """Configuration for the durable checkpoint and trigger pattern store."""
    db_path: str
    max_save_attempts: int


@dataclass
class MemoryConfig:
    """Thresholds for classification, merging, trigger matching and correlation."""
    classification_threshold: float
    summary_interval_turns: int
    merge_threshold: float
    trigger_probabilistic_threshold: float
    correlator_confidence_threshold: float


@dataclass
class RetrievalConfig:
    """Configuration for fan-out retrieval and the search cache."""
    total_limit: int
    per_collection_top_k: int
    timeout_seconds: float
    max_workers: int
    episodic_recency_boost: float
    episodic_recency_window_days: int
    cache_enabled: bool
    cache_ttl_seconds: float


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
    vector_backend: str
    bedrock_llm: BedrockLLMConfig
    bedrock_embed: BedrockEmbedConfig
    opensearch: OpenSearchConfig
    checkpoint: CheckpointConfig
    memory: MemoryConfig
    retrieval: RetrievalConfig
    mcp: MCPConfig


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-sonnet-20240229-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '4096')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.0')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')))

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')))

    # Vector search configuration, one index per (org_id, memory_type)
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_prefix=os.getenv('OPENSEARCH_INDEX_PREFIX', 'memorch'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '1024')))

    checkpoint_config = CheckpointConfig(db_path=os.getenv('CHECKPOINT_DB_PATH', 'memorch.db'),
                                         max_save_attempts=int(os.getenv('CHECKPOINT_MAX_SAVE_ATTEMPTS', '3')))

    memory_config = MemoryConfig(
        classification_threshold=float(os.getenv('MEMORY_CLASSIFICATION_THRESHOLD', '0.5')),
        summary_interval_turns=int(os.getenv('MEMORY_SUMMARY_INTERVAL_TURNS', '10')),
        merge_threshold=float(os.getenv('MEMORY_MERGE_THRESHOLD', '0.85')),
        trigger_probabilistic_threshold=float(os.getenv('TRIGGER_PROBABILISTIC_THRESHOLD', '0.75')),
        correlator_confidence_threshold=float(os.getenv('CORRELATOR_CONFIDENCE_THRESHOLD', '0.8')))

    retrieval_config = RetrievalConfig(
        total_limit=int(os.getenv('RETRIEVAL_TOTAL_LIMIT', '20')),
        per_collection_top_k=int(os.getenv('RETRIEVAL_PER_COLLECTION_TOP_K', '10')),
        timeout_seconds=float(os.getenv('RETRIEVAL_TIMEOUT_SECONDS', '2.0')),
        max_workers=int(os.getenv('RETRIEVAL_MAX_WORKERS', '4')),
        episodic_recency_boost=float(os.getenv('RETRIEVAL_EPISODIC_RECENCY_BOOST', '0.05')),
        episodic_recency_window_days=int(os.getenv('RETRIEVAL_EPISODIC_RECENCY_WINDOW_DAYS', '30')),
        cache_enabled=_env_bool('SEARCH_CACHE_ENABLED', 'true'),
        cache_ttl_seconds=float(os.getenv('SEARCH_CACHE_TTL_SECONDS', '60')))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     vector_backend=os.getenv('VECTOR_BACKEND', 'opensearch'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     opensearch=opensearch_config,
                     checkpoint=checkpoint_config,
                     memory=memory_config,
                     retrieval=retrieval_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
