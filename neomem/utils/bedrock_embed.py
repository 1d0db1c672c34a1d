"""
Amazon Bedrock embedding provider with retry logic and error handling.
"""

import json
import random
import time
from typing import List

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockEmbedConfig
from .logging_config import get_logger

logger = get_logger(__name__)

# Cohere embed models accept at most 96 texts per request
COHERE_MAX_BATCH = 96


class BedrockEmbedError(Exception):
    """Custom exception for Bedrock embedding errors."""
    pass


class BedrockEmbed:
    """Embedding provider backed by Amazon Bedrock.

    Produces vectors of a fixed ``dimension`` that must match the graph store's vector indexes.
    """

    def __init__(self, config: BedrockEmbedConfig, client=None):
        """
        Initialize Bedrock embedding client.

        Args:
            config: BedrockEmbedConfig instance with connection parameters
            client: Optional pre-built bedrock-runtime client
        """
        self.config = config
        self.model_id = config.model_id
        self.dimension = config.dimension

        if 'cohere' in self.model_id.lower() and self.dimension != 1024:
            raise BedrockEmbedError(f'Cohere models only support 1024 dimensions, got {self.dimension}')

        self.bedrock = client or boto3.client(service_name='bedrock-runtime', region_name=config.region)

        logger.info(f'Initialized Bedrock Embed client with model: {self.model_id} ({self.dimension} dims)')

    @property
    def is_cohere(self) -> bool:
        return 'cohere' in self.model_id.lower()

    def _call_with_retry(self, data: dict) -> dict:
        """
        Make a Bedrock API call with retry logic.

        Args:
            data: Request data dictionary

        Returns:
            Response dictionary from Bedrock API

        Raises:
            BedrockEmbedError: If all retry attempts fail
        """
        body = json.dumps(data)

        for attempt in range(self.config.retry_attempts):
            try:
                response = self.bedrock.invoke_model(body=body,
                                                     modelId=self.model_id,
                                                     accept='application/json',
                                                     contentType='application/json')
                return json.loads(response.get('body').read())

            except (ClientError, BotoCoreError) as e:
                logger.warning(f'Bedrock Embed attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')

                if attempt < self.config.retry_attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                    time.sleep(delay)
                else:
                    raise BedrockEmbedError(f'Bedrock Embed failed after {self.config.retry_attempts} attempts: {e}')

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock Embed: {e}')
                raise BedrockEmbedError(f'Unexpected Bedrock Embed error: {e}')

        raise BedrockEmbedError(f'Bedrock Embed failed after {self.config.retry_attempts} attempts')

    def _check_vector(self, vector) -> List[float]:
        if not isinstance(vector, list) or len(vector) != self.dimension:
            got = len(vector) if isinstance(vector, list) else type(vector).__name__
            raise BedrockEmbedError(f'Expected {self.dimension}-dim embedding from {self.model_id}, got {got}')
        return vector

    def _embed_titan(self, text: str) -> List[float]:
        response = self._call_with_retry({'inputText': text, 'dimensions': self.dimension})
        return self._check_vector(response.get('embedding'))

    def _embed_cohere(self, texts: List[str], input_type: str) -> List[List[float]]:
        response = self._call_with_retry({'input_type': input_type, 'texts': texts})
        embeddings = response.get('embeddings') or []
        if len(embeddings) != len(texts):
            raise BedrockEmbedError(f'Cohere returned {len(embeddings)} embeddings for {len(texts)} texts')
        return [self._check_vector(e) for e in embeddings]

    def embed(self, text: str, input_type: str = 'search_document') -> List[float]:
        """
        Generate an embedding for a single text.

        Args:
            text: Text to embed
            input_type: Cohere input type (search_document or search_query)

        Returns:
            Embedding vector of length ``dimension``

        Raises:
            BedrockEmbedError: If embedding generation fails
        """
        if not text or not text.strip():
            raise BedrockEmbedError('Cannot embed empty text')

        try:
            if self.is_cohere:
                return self._embed_cohere([text], input_type)[0]
            if 'titan' in self.model_id.lower():
                return self._embed_titan(text)
            raise BedrockEmbedError(f'Unsupported embedding model: {self.model_id}')
        except BedrockEmbedError:
            raise
        except Exception as e:
            logger.error(f'Error generating embedding: {e}')
            raise BedrockEmbedError(f'Embedding failed: {e}')

    def embed_query(self, text: str) -> List[float]:
        return self.embed(text, input_type='search_query')

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for several texts, preserving input order.

        Args:
            texts: Texts to embed

        Returns:
            One embedding per input text, in the same order

        Raises:
            BedrockEmbedError: If any embedding fails
        """
        if not texts:
            return []
        if any(not t or not t.strip() for t in texts):
            raise BedrockEmbedError('Cannot embed empty text in batch')

        if self.is_cohere:
            vectors: List[List[float]] = []
            for start in range(0, len(texts), COHERE_MAX_BATCH):
                vectors.extend(self._embed_cohere(texts[start:start + COHERE_MAX_BATCH], 'search_document'))
            return vectors

        # Titan has no batch endpoint
        return [self.embed(t) for t in texts]

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock embedding service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            return len(self.embed('test')) == self.dimension
        except Exception as e:
            logger.error(f'Bedrock Embed health check failed: {e}')
            return False
