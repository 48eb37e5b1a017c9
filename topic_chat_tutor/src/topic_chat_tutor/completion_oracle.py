"""
Completion Oracle

Thin wrapper around the OpenAI chat completions API that:
1. Requests JSON output (``response_format={"type": "json_object"}``)
2. Enforces a hard timeout on every call
3. Recovers a JSON object embedded in surrounding text
4. Walks an explicit retry policy (primary prompt, then a stricter one)

The oracle never fabricates a result: when every attempt fails, ``invoke``
returns None and the caller takes its degraded path.
"""

import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, Sequence, TypeVar

from dotenv import load_dotenv
from openai import AsyncOpenAI, OpenAIError

load_dotenv()

logger = logging.getLogger(__name__)

T = TypeVar("T")

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


class OracleError(Exception):
    """The oracle could not produce a usable completion."""


class OracleTimeoutError(OracleError):
    """The completion did not arrive within the configured timeout."""


class OracleOutputError(OracleError):
    """The completion arrived but is not a JSON object."""


@dataclass
class OracleRequest:
    """One prompt to send to the oracle."""
    system_prompt: str
    user_prompt: str
    temperature: float = 0.3
    max_tokens: int = 900
    label: str = "primary"


@dataclass
class RetryPolicy:
    """
    How hard to try before giving up.

    ``max_attempts`` counts every call, so 2 means one call plus one strict
    retry.
    """
    max_attempts: int = 2
    timeout_seconds: float = 20.0


@dataclass
class OracleResult(Generic[T]):
    value: T
    attempts: int


def extract_json_object(content: Optional[str]) -> Dict[str, Any]:
    """
    Parse a completion as a JSON object.

    Tries the whole text first, then the outermost ``{...}`` substring
    (models sometimes wrap JSON in prose or code fences).

    Raises:
        OracleOutputError: If no JSON object can be recovered
    """
    text = (content or "").strip()
    if not text:
        raise OracleOutputError("empty completion")

    candidates = [text]
    match = _JSON_OBJECT.search(text)
    if match and match.group(0) != text:
        candidates.append(match.group(0))

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed

    raise OracleOutputError(f"no JSON object in completion: {text[:80]!r}")


class CompletionOracle:
    """
    Structured-output client for grading answers and proposing questions.

    Args:
        llm_client: AsyncOpenAI-compatible client (built from
            OPENAI_API_KEY when omitted)
        model: Chat model name (defaults to OPENAI_MODEL or gpt-4o-mini)
    """

    def __init__(self, llm_client: Optional[Any] = None, model: Optional[str] = None):
        self.model = model or os.getenv("OPENAI_MODEL", "gpt-4o-mini")
        if llm_client is None:
            api_key = os.getenv("OPENAI_API_KEY")
            if api_key:
                llm_client = AsyncOpenAI(api_key=api_key)
            else:
                logger.warning("⚠️ [CompletionOracle] OPENAI_API_KEY not set - every call will take the degraded path")
        self.llm_client = llm_client

    @property
    def available(self) -> bool:
        return self.llm_client is not None

    async def complete_json(self, request: OracleRequest, timeout_seconds: float) -> Dict[str, Any]:
        """
        Run one completion and parse it as a JSON object.

        Raises:
            OracleTimeoutError: If the call exceeds ``timeout_seconds``
            OracleOutputError: If the reply is not a JSON object
            OracleError: For client or API failures
        """
        if self.llm_client is None:
            raise OracleError("no completion client configured")

        try:
            completion = await asyncio.wait_for(
                self.llm_client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": request.system_prompt},
                        {"role": "user", "content": request.user_prompt},
                    ],
                    temperature=request.temperature,
                    max_tokens=request.max_tokens,
                    response_format={"type": "json_object"},
                ),
                timeout=timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise OracleTimeoutError(f"{request.label} call timed out after {timeout_seconds}s") from e
        except OpenAIError as e:
            raise OracleError(f"{request.label} call failed: {e}") from e

        if not completion.choices:
            raise OracleOutputError("completion has no choices")
        return extract_json_object(completion.choices[0].message.content)

    async def invoke(
        self,
        requests: Sequence[OracleRequest],
        parse: Callable[[Dict[str, Any]], T],
        policy: RetryPolicy,
    ) -> Optional[OracleResult[T]]:
        """
        Try each request in turn until one parses.

        Attempt ``i`` uses ``requests[i]`` (the last request is reused when
        the policy allows more attempts than there are requests). ``parse``
        raising ``ValueError`` counts as malformed output.

        Returns:
            OracleResult with the parsed value, or None if every attempt failed
        """
        if not requests:
            raise ValueError("invoke() needs at least one request")

        attempts = max(1, policy.max_attempts)
        for attempt in range(attempts):
            request = requests[min(attempt, len(requests) - 1)]
            try:
                payload = await self.complete_json(request, policy.timeout_seconds)
                value = parse(payload)
            except OracleTimeoutError as e:
                logger.warning(f"⏱️ [CompletionOracle] {e} (attempt {attempt + 1}/{attempts})")
                continue
            except (OracleError, ValueError) as e:
                logger.warning(
                    f"⚠️ [CompletionOracle] Unusable {request.label} output: {e} (attempt {attempt + 1}/{attempts})"
                )
                continue
            if attempt > 0:
                logger.info(f"✅ [CompletionOracle] Recovered on {request.label} attempt {attempt + 1}")
            return OracleResult(value=value, attempts=attempt + 1)

        logger.error(f"❌ [CompletionOracle] All {attempts} attempts failed")
        return None
