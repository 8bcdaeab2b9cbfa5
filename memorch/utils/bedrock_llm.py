"""
Amazon Bedrock LLM client used for memory extraction.
"""

import json
from typing import Any, Dict, List, Optional

import boto3
from botocore.config import Config as BotoConfig

from .config import BedrockLLMConfig
from .json_utils import clean_json_response
from .logging_config import get_logger
from .retry import call_with_backoff

logger = get_logger(__name__)


class BedrockLLMError(Exception):
    """Custom exception for Bedrock LLM errors."""
    pass


class BedrockLLM:
    """Amazon Bedrock Converse API client returning plain text or parsed JSON."""

    def __init__(self, config: BedrockLLMConfig):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
        """
        self.config = config
        self.model_id = config.model_id

        # Retries are handled by call_with_backoff
        self.bedrock_runtime = boto3.client('bedrock-runtime',
                                            region_name=config.region,
                                            config=BotoConfig(connect_timeout=60, read_timeout=120, retries={'max_attempts': 0}))

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id}')

    def converse(self,
                 messages: List[Dict[str, Any]],
                 system_prompt: str,
                 max_tokens: Optional[int] = None,
                 stop_sequences: Optional[List[str]] = None) -> str:
        """
        Run one Converse call and return the concatenated text of the reply.

        Args:
            messages: Conversation in Bedrock Converse format
            system_prompt: System prompt
            max_tokens: Generation limit, config default if None
            stop_sequences: Stop sequences for generation

        Raises:
            BedrockLLMError: If all retry attempts fail
        """
        inference_config = {
            'maxTokens': max_tokens or self.config.max_tokens,
            'temperature': self.config.temperature,
            'stopSequences': stop_sequences or [],
        }

        def request():
            return self.bedrock_runtime.converse(modelId=self.model_id,
                                                 messages=messages,
                                                 system=[{
                                                     'text': system_prompt
                                                 }],
                                                 inferenceConfig=inference_config)

        response = call_with_backoff(request, self.config.retry_attempts, self.config.retry_delay, BedrockLLMError, 'Bedrock LLM')
        blocks = response.get('output', {}).get('message', {}).get('content', [])
        text = ''.join(block.get('text', '') for block in blocks)
        logger.debug(f"Bedrock LLM reply of {len(text)} chars, usage {response.get('usage')}")
        return text

    def complete_json(self, system_prompt: str, user_text: str) -> Any:
        """
        Ask for a JSON answer by prefilling a ```json block and parse the result.

        Raises:
            BedrockLLMError: If the call fails or the answer is not valid JSON
        """
        messages = [{
            'role': 'user',
            'content': [{
                'text': user_text
            }]
        }, {
            'role': 'assistant',
            'content': [{
                'text': '```json'
            }]
        }]
        reply = self.converse(messages, system_prompt, stop_sequences=['```'])

        try:
            return json.loads(clean_json_response(reply))
        except json.JSONDecodeError as e:
            logger.error(f'Failed to parse LLM JSON response: {e}')
            raise BedrockLLMError(f'LLM returned invalid JSON: {e}')

    def health_check(self) -> bool:
        try:
            reply = self.converse([{'role': 'user', 'content': [{'text': 'Hi'}]}], "Respond with just 'OK'.", max_tokens=10)
            return bool(reply.strip())

        except BedrockLLMError as e:
            logger.error(f'Bedrock LLM health check failed: {e}')
            return False
