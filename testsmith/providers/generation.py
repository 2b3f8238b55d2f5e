"""
Generation provider client.

Wraps one call to an OpenAI-compatible ``/chat/completions`` endpoint (OpenAI,
vLLM, LM Studio, Ollama's /v1 API) that turns a changed file into named test
cases. Around the HTTP call the client adds:

- a per-call timeout
- a rate-limit permit before every attempt, retries included
- exponential-backoff retries for transient failures
- validation of the response contract

Response contract:
    The model must answer with a JSON object, optionally wrapped in a
    markdown fence::

        {"testCases": [{"name": "...", "description": "...",
                        "priority": "high", "testCode": "..."}]}

    Entries without a name or code are dropped. A response with no usable
    entry is rejected.

Failure classes:
    - HTTP 429, HTTP 5xx, transport errors and timeouts are transient
    - other HTTP 4xx, malformed units and unusable responses are not, and
      are raised on the first occurrence
"""

import asyncio
import json
import re
from typing import Any

import httpx
import structlog

from testsmith.config.settings import LlmConfig
from testsmith.exceptions import (
    GenerationFailedError,
    InvalidUnitError,
    ProviderContentError,
    TransientProviderError,
)
from testsmith.models.domain import (
    GeneratedCase,
    GeneratedSuite,
    GenerationUnit,
    Language,
    Priority,
    TestType,
)
from testsmith.ratelimit import RateLimiter
from testsmith.utils.retry import async_retry

log = structlog.get_logger(__name__)

SYSTEM_PROMPT = (
    "You are an expert software testing engineer. You write focused, runnable "
    "tests and answer only with the requested JSON object."
)

_FOCUS: dict[TestType, list[str]] = {
    TestType.UNIT: [
        "Method functionality and behavior",
        "Edge cases and boundary conditions",
        "Exception handling and error scenarios",
        "Input validation and null or empty inputs",
        "Return value validation",
        "Mock external dependencies",
    ],
    TestType.INTEGRATION: [
        "Component interactions",
        "API endpoints and data flow",
        "Database and external service integration",
        "Error propagation across components",
        "Timeout and retry scenarios",
    ],
    TestType.E2E: [
        "Complete user workflows",
        "User interface interactions",
        "Business process validation",
        "Error recovery from the user's point of view",
    ],
}

_FRAMEWORKS: dict[Language, str] = {
    Language.JAVA: "JUnit 5 with Mockito",
    Language.JAVASCRIPT: "Jest",
    Language.TYPESCRIPT: "Jest with ts-jest",
    Language.PYTHON: "pytest",
    Language.CSHARP: "xUnit with Moq",
    Language.GO: "the standard testing package",
    Language.RUST: "the built-in #[test] harness",
}

_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def build_prompt(unit: GenerationUnit, source: str) -> str:
    """Build the user prompt for one unit."""
    focus = "\n".join(f"- {item}" for item in _FOCUS[unit.test_type])
    framework = _FRAMEWORKS.get(unit.language, "the idiomatic test framework")

    return f"""Generate {unit.test_type.value} tests for the following code.

File: {unit.file_path}
Language: {unit.language.value}
Framework: {framework}

Code to test:
```{unit.language.value}
{source}
```

Generate at most {unit.max_tests} test cases covering:
{focus}

Respond with a single JSON object of this shape and nothing else:
{{"testCases": [{{"name": "descriptive test name", "description": "what it verifies", \
"priority": "low|medium|high", "testCode": "complete test code"}}]}}
"""


def parse_test_cases(content: str) -> list[GeneratedCase]:
    """Extract named test cases from a model answer.

    Raises:
        ValueError: If the answer holds no JSON object with a testCases list.
    """
    fenced = _FENCE.search(content)
    text = fenced.group(1) if fenced else content

    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end < start:
        raise ValueError("no JSON object in response")

    data = json.loads(text[start : end + 1])
    if not isinstance(data, dict):
        raise ValueError("response is not a JSON object")

    raw_cases = data.get("testCases", data.get("test_cases"))
    if not isinstance(raw_cases, list):
        raise ValueError("response has no testCases list")

    cases: list[GeneratedCase] = []
    for item in raw_cases:
        if not isinstance(item, dict):
            continue
        name = str(item.get("name") or "").strip()
        code = str(item.get("testCode") or item.get("code") or "")
        if not name or not code.strip():
            continue
        cases.append(
            GeneratedCase(
                name=name,
                code=code,
                description=str(item.get("description") or ""),
                priority=Priority.parse(item.get("priority")),
            )
        )
    return cases


class GenerationProviderClient:
    """Typed client for the test-generation model.

    Attributes:
        config: Provider settings (endpoint, model, timeout, retry policy).
        rate_limiter: Limiter consulted before every attempt, or None.
        rate_limit_key: Bucket key used with ``rate_limiter``.

    Example:
        >>> async with GenerationProviderClient(settings.llm, limiter) as client:
        ...     suite = await client.generate(unit, source)
    """

    def __init__(
        self,
        config: LlmConfig,
        rate_limiter: RateLimiter | None = None,
        http_client: httpx.AsyncClient | None = None,
        rate_limit_key: str | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Provider settings.
            rate_limiter: Limiter for outgoing calls.
            http_client: Client to send requests with. One is created (and
                closed by :meth:`close`) when omitted.
            rate_limit_key: Bucket key; defaults to the provider name.
        """
        self.config = config
        self.rate_limiter = rate_limiter
        self.rate_limit_key = rate_limit_key or config.provider
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient()

    async def __aenter__(self) -> "GenerationProviderClient":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key is not None:
            headers["Authorization"] = f"Bearer {self.config.api_key.get_secret_value()}"
        return headers

    async def generate(self, unit: GenerationUnit, source: str) -> GeneratedSuite:
        """Generate test cases for one unit.

        Args:
            unit: The unit to generate for.
            source: Current contents of the unit's file.

        Returns:
            GeneratedSuite with between 1 and ``unit.max_tests`` cases.

        Raises:
            InvalidUnitError: If the unit cannot be sent.
            ProviderContentError: If the provider rejects the request or
                answers with no usable test case.
            GenerationFailedError: If transient failures outlast the
                attempt cap.
        """
        self._validate(unit, source)
        prompt = build_prompt(unit, source)
        attempts = 0

        @async_retry(
            max_attempts=self.config.max_attempts,
            base_delay=self.config.backoff_base,
            backoff_factor=self.config.backoff_factor,
            exceptions=(TransientProviderError,),
        )
        async def attempt() -> GeneratedSuite:
            nonlocal attempts
            attempts += 1
            return await self._attempt(unit, prompt)

        try:
            suite = await attempt()
        except TransientProviderError as e:
            log.error("generation_attempts_exhausted", unit_id=unit.id, attempts=attempts, error=e.message)
            raise GenerationFailedError(
                f"Provider still failing after {attempts} attempts: {e.message}",
                unit_id=unit.id,
                attempts=attempts,
            ) from e

        log.info(
            "generation_succeeded",
            unit_id=unit.id,
            cases=len(suite.cases),
            attempts=attempts,
            tokens=suite.tokens,
        )
        return suite

    def _validate(self, unit: GenerationUnit, source: str) -> None:
        if unit.language == Language.UNKNOWN:
            raise InvalidUnitError("Unit has no recognized language", unit_id=unit.id)
        if unit.max_tests < 1:
            raise InvalidUnitError("Unit allows no test cases", unit_id=unit.id)
        if not source.strip():
            raise InvalidUnitError("Source file is empty", unit_id=unit.id)

    async def _attempt(self, unit: GenerationUnit, prompt: str) -> GeneratedSuite:
        """One provider call, classified into success or a typed failure."""
        if self.rate_limiter is not None:
            await self.rate_limiter.acquire(self.rate_limit_key)

        payload = {
            "model": self.config.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
        }

        try:
            response = await asyncio.wait_for(
                self._client.post(
                    f"{self.config.base_url}/chat/completions",
                    json=payload,
                    headers=self._headers(),
                ),
                timeout=self.config.timeout / 1000,
            )
        except (TimeoutError, httpx.TimeoutException) as e:
            raise TransientProviderError(
                f"Provider call timed out after {self.config.timeout}ms",
                unit_id=unit.id,
            ) from e
        except httpx.TransportError as e:
            raise TransientProviderError(f"Provider unreachable: {e}", unit_id=unit.id) from e

        status = response.status_code
        if status == 429 or status >= 500:
            raise TransientProviderError("Provider unavailable", unit_id=unit.id, status_code=status)
        if status >= 400:
            raise ProviderContentError(
                f"Provider rejected request (HTTP {status}): {self._error_detail(response)}",
                unit_id=unit.id,
            )

        try:
            body = response.json()
            content = body["choices"][0]["message"]["content"]
            cases = parse_test_cases(content or "")
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ProviderContentError(f"Unusable provider response: {e}", unit_id=unit.id) from e

        if not cases:
            raise ProviderContentError("Provider response contained no test cases", unit_id=unit.id)

        if len(cases) > unit.max_tests:
            log.debug("generated_cases_truncated", unit_id=unit.id, received=len(cases), kept=unit.max_tests)

        usage = body.get("usage") or {}
        return GeneratedSuite(
            unit=unit,
            cases=cases[: unit.max_tests],
            model=body.get("model", self.config.model),
            tokens=usage.get("total_tokens"),
        )

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            error = response.json().get("error", {})
            if isinstance(error, dict):
                return str(error.get("message") or response.text)
            return str(error)
        except (ValueError, AttributeError):
            return response.text
