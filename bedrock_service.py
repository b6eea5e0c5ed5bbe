"""
Amazon Bedrock service module.
Handles all interactions with the Bedrock runtime API (Anthropic Messages format).
"""

import boto3
import json
import logging
from typing import List, Dict, Optional, Any
from botocore.exceptions import ClientError, NoCredentialsError
from dataclasses import dataclass, field
from config import aws_config, model_config, get_credentials_info


logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "bedrock-2023-05-31"


class BedrockError(Exception):
    """Custom exception for Bedrock service errors"""
    pass


@dataclass
class GenerationConfig:
    """Configuration for a single generation request"""
    max_tokens: int = 4096
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    stop_sequences: Optional[List[str]] = None


@dataclass
class ToolUseBlock:
    """Represents a tool_use block from the response"""
    id: str = ""
    name: str = ""
    input: Dict = field(default_factory=dict)


@dataclass
class GenerationResult:
    """Result from a generation request"""
    content: str = ""
    tool_uses: List[ToolUseBlock] = field(default_factory=list)
    content_blocks: List[Dict] = field(default_factory=list)
    stop_reason: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0


class BedrockService:
    """
    Service class for Amazon Bedrock interactions.
    Synchronous; async callers run it in an executor.
    """

    def __init__(
        self,
        model_id: Optional[str] = None,
        region: Optional[str] = None
    ):
        self.model_id = model_id or model_config.model_id
        self.region = region or aws_config.region

        self.client = self._create_client()
        logger.info(f"BedrockService initialized with model: {self.model_id} ({get_credentials_info()})")

    def _create_client(self) -> Any:
        """Create and configure the Bedrock runtime client"""
        try:
            session_kwargs = {"region_name": self.region}

            if aws_config.has_profile():
                session_kwargs["profile_name"] = aws_config.profile_name
            elif aws_config.has_explicit_credentials():
                session_kwargs["aws_access_key_id"] = aws_config.access_key_id
                session_kwargs["aws_secret_access_key"] = aws_config.secret_access_key
                if aws_config.has_session_token():
                    session_kwargs["aws_session_token"] = aws_config.session_token

            session = boto3.Session(**session_kwargs)
            return session.client("bedrock-runtime")

        except NoCredentialsError:
            raise BedrockError("AWS credentials not configured.")
        except Exception as e:
            raise BedrockError(f"Failed to initialize Bedrock client: {e}")

    def _format_request_body(
        self,
        messages: List[Dict],
        system_prompt: Optional[str],
        config: GenerationConfig,
        tools: Optional[List[Dict]] = None
    ) -> Dict[str, Any]:
        """Format request body for Anthropic Claude models with optional tool_use"""
        formatted_messages = []
        for msg in messages:
            if msg["role"] == "system":
                continue
            content = msg.get("content")
            if isinstance(content, str) and not content.strip():
                content = "(no content)"
            formatted_messages.append({"role": msg["role"], "content": content})

        body: Dict[str, Any] = {
            "anthropic_version": ANTHROPIC_VERSION,
            "max_tokens": config.max_tokens,
            "messages": formatted_messages,
        }
        if system_prompt:
            body["system"] = system_prompt
        if config.temperature is not None:
            body["temperature"] = config.temperature
        elif config.top_p is not None:
            body["top_p"] = config.top_p
        if config.stop_sequences:
            body["stop_sequences"] = config.stop_sequences
        if tools:
            body["tools"] = tools
        return body

    def _parse_response(self, response_body: Dict[str, Any]) -> GenerationResult:
        """Parse the response body into a GenerationResult"""
        result = GenerationResult()
        try:
            for block in response_body.get("content", []):
                block_type = block.get("type", "")
                if block_type == "text":
                    result.content += block.get("text", "")
                    result.content_blocks.append(block)
                elif block_type == "tool_use":
                    result.tool_uses.append(ToolUseBlock(
                        id=block.get("id", ""),
                        name=block.get("name", ""),
                        input=block.get("input", {}) or {},
                    ))
                    result.content_blocks.append(block)

            usage = response_body.get("usage", {})
            result.input_tokens = usage.get("input_tokens", 0)
            result.output_tokens = usage.get("output_tokens", 0)
            result.stop_reason = response_body.get("stop_reason")
        except (KeyError, IndexError, AttributeError) as e:
            logger.error(f"Error parsing response: {e}")
            raise BedrockError(f"Failed to parse model response: {e}")
        return result

    def generate_response(
        self,
        messages: List[Dict],
        system_prompt: Optional[str] = None,
        model_id: Optional[str] = None,
        config: Optional[GenerationConfig] = None,
        tools: Optional[List[Dict]] = None
    ) -> GenerationResult:
        """
        Generate a response using Amazon Bedrock.
        Returns a GenerationResult with content and optional tool_use blocks.
        """
        current_model = model_id or self.model_id
        gen_config = config or GenerationConfig(
            max_tokens=model_config.max_tokens,
            temperature=model_config.temperature,
        )

        try:
            request_body = self._format_request_body(messages, system_prompt, gen_config, tools=tools)
            logger.info(f"Invoking model: {current_model}")
            response = self.client.invoke_model(
                modelId=current_model,
                body=json.dumps(request_body),
                contentType="application/json",
                accept="application/json"
            )
            response_body = json.loads(response["body"].read())
            return self._parse_response(response_body)

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            error_message = e.response.get('Error', {}).get('Message', str(e))
            logger.error(f"Bedrock API error: {error_code} - {error_message}")

            if error_code in ['ExpiredTokenException', 'InvalidSignatureException']:
                raise BedrockError("AWS credentials expired. Please refresh.")
            raise BedrockError(f"Bedrock API error: {error_message}")
