# friction_pipeline/agents/llm_agent.py
from openai import (
    OpenAI,
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    RateLimitError,
)
from pydantic import ValidationError
from typing import Callable, List, Dict, Optional, Tuple
from friction_pipeline.config.settings import Settings, PipelineConfig
from friction_pipeline.errors import ClassificationError, ClassificationParseError
from friction_pipeline.models.schemas import FrictionJudgment, FrictionCard, RawInput
import json
import re
import time
import logging

logger = logging.getLogger(__name__)

# Non-standard status the service uses when it is temporarily overloaded
OVERLOADED_STATUS = 529

TRUNCATION_NOTE = "\n[Case text truncated for analysis]"

NON_FRICTION_THEME = "normal_support"

VALID_SENTIMENTS = {"frustrated", "confused", "angry", "neutral", "satisfied"}


def _is_retryable(error: Exception) -> bool:
    """Overload and transport failures are transient; other API errors are not."""
    if isinstance(error, (RateLimitError, APIConnectionError, APITimeoutError)):
        return True
    if isinstance(error, APIStatusError):
        return error.status_code == OVERLOADED_STATUS or error.status_code >= 500
    return False


class ChatAgent:
    """OpenAI chat client with bounded exponential backoff."""

    def __init__(self, config: Settings, sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.pipeline = config.pipeline
        self.client = OpenAI(
            api_key=config.openai_api_key,
            timeout=config.openai_timeout_seconds,
            max_retries=0,
        )
        self.model = config.openai_llm_model
        self.sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        """Wait before retry number ``attempt + 1``: base doubled per attempt, capped."""
        return min(
            self.pipeline.backoff_base_seconds * (2 ** attempt),
            self.pipeline.backoff_max_seconds,
        )

    def chat(self, messages: List[dict], max_tokens: int = 500) -> str:
        """
        Send a list of messages to the chat model and return the reply text.

        Overload responses and transport failures are retried with exponential
        backoff up to ``max_attempts`` calls in total.

        Args:
            messages: List of message dicts (e.g., [{"role": "user", "content": "Hello"}])
            max_tokens: Upper bound on the reply length

        Returns:
            The assistant's reply as a string.

        Raises:
            ClassificationError: every attempt failed with a transient error.
            APIStatusError: the service rejected the request outright.
        """
        max_attempts = self.pipeline.max_attempts

        for attempt in range(max_attempts):
            try:
                response = self.client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    max_tokens=max_tokens,
                )
                return response.choices[0].message.content or ""
            except Exception as e:
                if not _is_retryable(e):
                    raise
                if attempt == max_attempts - 1:
                    raise ClassificationError(
                        f"Text-analysis service unavailable after {max_attempts} attempts: {e}"
                    ) from e

                delay = self.backoff_delay(attempt)
                logger.warning(
                    f"Text-analysis service busy ({type(e).__name__}). Retrying in {delay}s... "
                    f"(attempt {attempt + 1}/{max_attempts})"
                )
                self.sleep(delay)

        raise ClassificationError("Max retries exceeded")

    def chat_single(self, prompt: str, max_tokens: int = 500) -> str:
        """Send a single user prompt and return the reply."""
        return self.chat([{"role": "user", "content": prompt}], max_tokens=max_tokens)


def parse_json_object(response: str) -> dict:
    """Extract the single JSON object from a model reply, tolerating code fences and prose."""
    text = re.sub(r'```(?:json|JSON)?\s*|\s*```', '', response).strip()

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        # Fall back to the outermost {...} span
        start, end = text.find('{'), text.rfind('}')
        if start == -1 or end <= start:
            raise ClassificationParseError(f"No JSON object in response: {response[:200]!r}")
        try:
            data = json.loads(text[start:end + 1])
        except json.JSONDecodeError as e:
            raise ClassificationParseError(f"Invalid JSON in response: {e}") from e

    if not isinstance(data, dict):
        raise ClassificationParseError(f"Expected a JSON object, got {type(data).__name__}")
    return data


class FrictionClassifier:
    """Classify support records into friction judgments."""

    DEFAULT_THEMES: Dict[str, str] = {
        "billing_confusion": "Invoice, payment, pricing, subscription issues",
        "integration_failures": "API issues, third-party app connections, data sync problems",
        "ui_confusion": "Interface unclear, hard to find features, confusing workflow",
        "performance_issues": "Slow load times, timeouts, system lag",
        "missing_features": "Requested functionality doesn't exist",
        "training_gaps": "User doesn't know how to use existing features",
        "support_response_time": "Complaints about support speed or quality",
        "data_quality": "Incorrect data, missing data, data inconsistencies",
        "reporting_issues": "Problems with reports, exports, analytics",
        "access_permissions": "User access, role permissions, login issues",
        "configuration_problems": "Settings not working, setup issues",
        "notification_issues": "Email alerts, in-app notifications problems",
        "workflow_inefficiency": "Process is too complex or time-consuming",
        "mobile_issues": "Mobile app or mobile web problems",
        "documentation_gaps": "Help docs missing, outdated, or unclear",
        "other": "Only if none of the above fit",
    }

    def __init__(
        self,
        config: Settings,
        themes: Optional[Dict[str, str]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the classifier.

        Args:
            config: Settings object with OpenAI and pipeline configuration
            themes: Optional theme key -> description map (uses DEFAULT_THEMES if None)
            sleep: Sleep function used for the inter-call delay and retries
        """
        self.agent = ChatAgent(config, sleep=sleep)
        self.pipeline: PipelineConfig = config.pipeline
        self.themes = dict(themes) if themes else dict(self.DEFAULT_THEMES)
        self.themes.setdefault("other", self.DEFAULT_THEMES["other"])
        self.sleep = sleep

    def use_themes(self, themes: Dict[str, str]) -> None:
        """Replace the theme catalogue; "other" is always kept."""
        if not themes:
            return
        self.themes = dict(themes)
        self.themes.setdefault("other", self.DEFAULT_THEMES["other"])

    def truncate(self, text: str) -> str:
        """Cap the text sent for analysis, marking the cut when one happened."""
        text = text or ""
        limit = self.pipeline.max_text_chars
        if len(text) > limit:
            return text[:limit] + TRUNCATION_NOTE
        return text

    def build_prompt(self, text: str) -> str:
        theme_lines = "\n".join(f"  * {key}: {desc}" for key, desc in self.themes.items())
        return f"""Analyze this customer support case and respond with ONLY a single valid JSON object (no markdown, no explanation).

FIRST, decide whether this is actual FRICTION or routine support.

is_friction: true/false - be strict.
  TRUE = systemic product problems: bugs, failures, broken features, confusing UI that blocks work,
         performance problems, integration failures, data quality caused by the system, billing errors.
  FALSE = routine requests: auto-replies, address/email/password changes, onboarding tasks,
          how-to questions answered by documentation, thank-you messages, cancellations.

Required JSON structure:
{{
  "is_friction": true or false,
  "summary": "brief 1-sentence summary of the issue",
  "theme_key": "one of the theme keys below",
  "severity": 1-5 (number, 1=minor inconvenience, 5=critical blocker),
  "sentiment": "one of: frustrated, confused, angry, neutral, satisfied",
  "root_cause": "brief root cause hypothesis",
  "evidence": ["at most 2 short quotes from the case"]
}}

Theme keys:
{theme_lines}

Case to analyze:
{self.truncate(text)}

Return ONLY the JSON object, nothing else."""

    def parse_judgment(self, response: str) -> FrictionJudgment:
        """
        Validate a service reply into a judgment, applying the documented defaults.

        Missing or out-of-range severity becomes 3, a missing or unknown theme
        becomes ``other`` and a missing sentiment becomes ``neutral``.

        Raises:
            ClassificationParseError: the reply is not a usable JSON object.
        """
        data = parse_json_object(response)

        summary = data.get("summary")
        if not isinstance(summary, str) or not summary.strip():
            raise ClassificationParseError("Response has no summary")

        flag = data.get("is_friction")
        if isinstance(flag, str):
            is_friction = flag.strip().lower() != "false"
        else:
            is_friction = flag is not False

        severity = data.get("severity")
        if isinstance(severity, bool) or not isinstance(severity, (int, float)):
            severity = 3
        elif isinstance(severity, float) and not severity.is_integer():
            severity = 3
        elif not 1 <= severity <= 5:
            severity = 3

        theme_key = data.get("theme_key")
        if not isinstance(theme_key, str) or theme_key not in self.themes:
            if theme_key:
                logger.debug(f"Unknown theme '{theme_key}', using 'other'")
            theme_key = "other"

        sentiment = data.get("sentiment")
        if not isinstance(sentiment, str) or sentiment not in VALID_SENTIMENTS:
            sentiment = "neutral"

        root_cause = data.get("root_cause") or data.get("reason") or "Unknown"

        evidence = data.get("evidence") or []
        if not isinstance(evidence, list):
            evidence = []

        if not is_friction:
            theme_key = NON_FRICTION_THEME
            severity = 1

        try:
            return FrictionJudgment(
                summary=summary.strip(),
                theme_key=theme_key,
                severity=int(severity),
                sentiment=sentiment,
                root_cause=str(root_cause),
                is_friction=is_friction,
                confidence=self.pipeline.default_confidence,
                evidence=[str(e) for e in evidence][:2],
            )
        except ValidationError as e:
            raise ClassificationParseError(f"Invalid judgment: {e}") from e

    def classify(self, text: str) -> FrictionJudgment:
        """
        Classify one record's text.

        Raises:
            ClassificationError: the service could not be reached after retries.
            ClassificationParseError: the service answered with an unusable reply.
        """
        response = self.agent.chat_single(self.build_prompt(text), max_tokens=500)
        return self.parse_judgment(response)

    def classify_batch(
        self, inputs: List[RawInput]
    ) -> Tuple[List[FrictionCard], List[str], List[str]]:
        """
        Classify an account's raw inputs one at a time.

        A malformed reply skips only that record. Records whose call failed
        after all retries are reported back as failures so they stay unprocessed.

        Args:
            inputs: Persisted raw inputs (each must have an id)

        Returns:
            Tuple of (cards created, ids of inputs the service answered for, ids that failed)
        """
        cards: List[FrictionCard] = []
        submitted: List[str] = []
        failed: List[str] = []

        for i, raw_input in enumerate(inputs):
            if i > 0:
                self.sleep(self.pipeline.inter_call_delay_seconds)
            if i > 0 and i % 20 == 0:
                logger.info(f"Progress: {i}/{len(inputs)} cases analyzed")

            try:
                judgment = self.classify(raw_input.text_content)
            except ClassificationParseError as e:
                logger.warning(f"Skipping raw input {raw_input.id}: {e}")
                submitted.append(raw_input.id)
                continue
            except ClassificationError as e:
                logger.error(f"Classification failed for raw input {raw_input.id}: {e}")
                failed.append(raw_input.id)
                continue
            except APIStatusError as e:
                logger.error(f"Service rejected raw input {raw_input.id}: {e}")
                failed.append(raw_input.id)
                continue

            submitted.append(raw_input.id)
            cards.append(FrictionCard(
                account_id=raw_input.account_id,
                user_id=raw_input.user_id,
                raw_input_id=raw_input.id,
                summary=judgment.summary,
                theme_key=judgment.theme_key,
                severity=judgment.severity,
                sentiment=judgment.sentiment,
                root_cause=judgment.root_cause,
                is_friction=judgment.is_friction,
                confidence_score=judgment.confidence,
                evidence_snippets=judgment.evidence,
                reasoning="Portfolio analysis" if judgment.is_friction
                else f"Non-friction: {judgment.root_cause}",
            ))

        return cards, submitted, failed
