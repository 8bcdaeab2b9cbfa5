"""
Amazon Bedrock embedding provider.
"""

import json
from typing import Any, Dict, List, Optional

import boto3

from ..models.errors import EmbeddingFailure
from .config import BedrockEmbedConfig
from .logging_config import get_logger
from .retry import call_with_backoff

logger = get_logger(__name__)


class BedrockEmbedError(EmbeddingFailure):
    """Custom exception for Bedrock embedding errors."""
    pass


class BedrockEmbed:
    """Embedding provider backed by Titan or Cohere models on Amazon Bedrock.

    `embed(text)` returns a vector of exactly `config.dimension` floats and raises
    BedrockEmbedError (an EmbeddingFailure) instead of leaking botocore errors.
    Memory texts, queries and trigger phrases are embedded the same way so their
    cosine similarities are comparable.
    """

    def __init__(self, config: BedrockEmbedConfig):
        self.config = config
        self.model_id = config.model_id
        self.dimension = config.dimension
        self.bedrock = boto3.client(service_name='bedrock-runtime', region_name=config.region)

        logger.info(f'Initialized Bedrock Embed client with model: {self.model_id} ({self.dimension} dimensions)')

    def _request_body(self, text: str) -> Dict[str, Any]:
        model = self.model_id.lower()
        if 'titan' in model:
            return {'inputText': text, 'dimensions': self.dimension}
        if 'cohere' in model:
            if self.dimension != 1024:
                raise BedrockEmbedError(f'Cohere models only support 1024 dimensions, got {self.dimension}')
            return {'input_type': 'search_document', 'texts': [text]}
        raise BedrockEmbedError(f'Unsupported embedding model: {self.model_id}')

    @staticmethod
    def _vector_from(result: Dict[str, Any]) -> Optional[List[float]]:
        if 'embedding' in result:
            return result['embedding']
        embeddings = result.get('embeddings') or []
        return embeddings[0] if embeddings else None

    def embed(self, text: str) -> List[float]:
        """
        Embed one text.

        Args:
            text: Non-empty text

        Returns:
            Embedding of the configured dimension

        Raises:
            BedrockEmbedError: If the text is empty, the model is unsupported or all retries fail
        """
        if not text or not text.strip():
            raise BedrockEmbedError('Cannot embed empty text')

        body = json.dumps(self._request_body(text))

        def request():
            response = self.bedrock.invoke_model(body=body,
                                                 modelId=self.model_id,
                                                 accept='application/json',
                                                 contentType='application/json')
            return json.loads(response.get('body').read())

        vector = self._vector_from(
            call_with_backoff(request, self.config.retry_attempts, self.config.retry_delay, BedrockEmbedError, 'Bedrock Embed'))

        if not vector or len(vector) != self.dimension:
            raise BedrockEmbedError(f'Embedding response had unexpected shape for model {self.model_id}')
        return [float(v) for v in vector]

    def health_check(self) -> bool:
        try:
            return len(self.embed('health check')) == self.dimension

        except EmbeddingFailure as e:
            logger.error(f'Bedrock Embed health check failed: {e}')
            return False
