"""
Amazon Bedrock AgentCore spam classifier.

Renders the spam triage prompt for a batch of messages and sends it to a
Bedrock AgentCore runtime. The reply text is returned as-is; verdicts and
batch statistics are extracted from it by ``domain.batch_stats``.

Usage:
    from integrations.agentcore_invocation import AgentCoreClassifier, create_bedrock_client
    from services.prompts import PromptLoader

    classifier = AgentCoreClassifier(
        client=create_bedrock_client(),
        agent_runtime_arn=os.environ['AGENT_RUNTIME_ARN'],
        prompt_loader=PromptLoader.from_env(),
    )
    reply = classifier.classify_batch(messages, known_domains, pending_domains)
"""

import json
import logging
import os
import time
import uuid
from typing import List, Optional, Sequence

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from domain.models import MessageSummary
from services.config import ConfigurationError
from services.prompts import PromptLoader, format_prompt

logger = logging.getLogger(__name__)

PROMPT_NAME = 'spam_triage.txt'

# Bedrock requires session IDs of at least 33 characters
MIN_SESSION_ID_LENGTH = 33


# ============================================================================
# Custom Exception Classes
# ============================================================================

class ClassifierError(Exception):
    """Raised when a classification call fails."""
    pass


class AgentNotFoundException(ClassifierError):
    """Raised when the specified Bedrock agent cannot be found."""
    pass


class ThrottlingException(ClassifierError):
    """Raised when Bedrock API requests are throttled."""
    pass


class ValidationException(ClassifierError):
    """Raised when input validation fails."""
    pass


# ============================================================================
# Client construction
# ============================================================================

def validate_agent_runtime_arn(agent_runtime_arn: Optional[str]) -> str:
    """
    Validate an AgentCore runtime ARN.

    Raises:
        ConfigurationError: If the ARN is missing or not a Bedrock ARN
    """
    if not agent_runtime_arn:
        raise ConfigurationError(
            "AGENT_RUNTIME_ARN environment variable is required but not set. "
            "Please configure this in your SAM template or Lambda environment."
        )

    if not agent_runtime_arn.startswith('arn:aws:bedrock'):
        raise ConfigurationError(
            f"AGENT_RUNTIME_ARN has invalid format. "
            f"Expected ARN starting with 'arn:aws:bedrock', "
            f"got: '{agent_runtime_arn[:50]}...'"
        )
    return agent_runtime_arn


def create_bedrock_client(region: Optional[str] = None):
    """
    Create a Bedrock AgentCore client with strict timeouts and no retries.

    Retries are left to the next scheduled run; a hung call must not eat
    the Lambda's whole time budget.

    Args:
        region: AWS region (defaults to AWS_REGION, then AWS_DEFAULT_REGION, then us-west-2)

    Returns:
        boto3 bedrock-agentcore client
    """
    client_config = Config(
        retries={
            'max_attempts': 0,  # 1 total call, no retries
            'mode': 'standard'
        },
        connect_timeout=10,
        read_timeout=120
    )

    region = region or os.environ.get('AWS_REGION', os.environ.get('AWS_DEFAULT_REGION', 'us-west-2'))

    client = boto3.client(
        'bedrock-agentcore',
        region_name=region,
        config=client_config
    )

    logger.info(
        f"Bedrock AgentCore client initialized: region={region}, "
        f"connect_timeout=10s, read_timeout=120s, max_attempts=0 (no retries)"
    )
    return client


def _generate_session_id() -> str:
    return f"spam-triage-{uuid.uuid4()}"


# ============================================================================
# Classifier
# ============================================================================

class AgentCoreClassifier:
    """
    Classifier collaborator backed by a Bedrock AgentCore runtime.

    Args:
        client: bedrock-agentcore client (see create_bedrock_client)
        agent_runtime_arn: Runtime ARN to invoke
        prompt_loader: Loader for the spam triage prompt template
        qualifier: Runtime endpoint qualifier
    """

    def __init__(
        self,
        client,
        agent_runtime_arn: str,
        prompt_loader: Optional[PromptLoader] = None,
        qualifier: str = 'DEFAULT'
    ):
        self.client = client
        self.agent_runtime_arn = validate_agent_runtime_arn(agent_runtime_arn)
        self.prompt_loader = prompt_loader or PromptLoader()
        self.qualifier = qualifier

    def build_prompt(
        self,
        messages: Sequence[MessageSummary],
        known_domains: Sequence[str],
        pending_domains: Sequence[str]
    ) -> str:
        """Render the triage prompt for a batch of messages."""
        template = self.prompt_loader.load_prompt(PROMPT_NAME)
        return format_prompt(
            template,
            count=len(messages),
            messages=json.dumps([m.to_dict_for_agent() for m in messages], indent=2),
            known_domains=', '.join(known_domains) if known_domains else '(none)',
            pending_domains=', '.join(pending_domains) if pending_domains else '(none)',
        )

    def classify_batch(
        self,
        messages: List[MessageSummary],
        known_domains: Sequence[str],
        pending_domains: Sequence[str],
        session_id: Optional[str] = None
    ) -> str:
        """
        Classify a batch of messages.

        Args:
            messages: Messages to classify (at least one)
            known_domains: Domains already in the registry
            pending_domains: Domains awaiting human review
            session_id: Optional runtime session (generated when omitted)

        Returns:
            str: The agent's reply text, expected to contain one
            ``VERDICT: {...}`` line per message and a ``BATCH_STATS:`` line

        Raises:
            ValidationException: If there is nothing to classify or the session id is invalid
            AgentNotFoundException: If the configured runtime does not exist
            ThrottlingException: If the request was throttled
            ClassifierError: For any other invocation failure
        """
        if not messages:
            raise ValidationException("At least one message is required for classification")

        if session_id is not None and len(session_id) < MIN_SESSION_ID_LENGTH:
            raise ValidationException(
                f"session_id must be at least {MIN_SESSION_ID_LENGTH} characters long "
                f"(Bedrock requirement). Got: {len(session_id)} characters"
            )
        session_id = session_id or _generate_session_id()

        prompt = self.build_prompt(messages, known_domains, pending_domains)
        return self._invoke(prompt, session_id)

    def _invoke(self, prompt: str, session_id: str) -> str:
        start_time = time.time()
        payload = json.dumps({"prompt": prompt})

        logger.info(
            f"Invoking agent: prompt_length={len(prompt)}, "
            f"session_id={session_id}, agent_arn={self.agent_runtime_arn[:50]}..."
        )

        try:
            response = self.client.invoke_agent_runtime(
                agentRuntimeArn=self.agent_runtime_arn,
                runtimeSessionId=session_id,
                payload=payload,
                qualifier=self.qualifier
            )
            response_body = response['response'].read()
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            error_message = e.response.get('Error', {}).get('Message', str(e))

            if error_code == 'ResourceNotFoundException':
                logger.error(f"Agent not found: agent_arn={self.agent_runtime_arn}, error={error_message}")
                raise AgentNotFoundException(
                    f"Agent not found: {self.agent_runtime_arn}. "
                    f"Verify the agent exists and is active. Error: {error_message}"
                ) from e
            if error_code == 'ThrottlingException':
                logger.error(f"Request throttled: {error_message}")
                raise ThrottlingException(f"Request throttled by Bedrock service: {error_message}") from e
            if error_code == 'ValidationException':
                logger.error(f"Request rejected: {error_message}")
                raise ValidationException(f"Bedrock rejected the request: {error_message}") from e

            logger.error(f"Agent invocation failed: error_code={error_code}, error_message={error_message}")
            raise ClassifierError(f"Agent invocation failed ({error_code}): {error_message}") from e
        except BotoCoreError as e:
            logger.error(f"Agent invocation failed: {e}")
            raise ClassifierError(f"Agent invocation failed: {e}") from e

        output = self._parse_response(response_body)
        execution_time = time.time() - start_time
        logger.info(
            f"Agent invocation succeeded: response_length={len(output)}, "
            f"execution_time={execution_time:.2f}s"
        )
        return output

    @staticmethod
    def _parse_response(response_body) -> str:
        if not response_body:
            logger.warning("Agent returned empty response")
            return ''

        try:
            response_data = json.loads(response_body)
        except json.JSONDecodeError as json_err:
            logger.warning(f"Agent response is not JSON ({json_err}), using raw text")
            return response_body.decode('utf-8') if isinstance(response_body, bytes) else str(response_body)

        if isinstance(response_data, str):
            return response_data
        if not isinstance(response_data, dict):
            return json.dumps(response_data)

        output = response_data.get('response', response_data.get('output', response_data))
        return output if isinstance(output, str) else json.dumps(output)
