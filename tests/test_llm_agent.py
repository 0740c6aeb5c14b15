"""Unit tests for the ChatAgent and FrictionClassifier classes."""
import json
import pytest
import httpx
from unittest.mock import Mock, patch, call
from openai import APIConnectionError, APIStatusError, RateLimitError
from friction_pipeline.agents.llm_agent import (
    ChatAgent,
    FrictionClassifier,
    TRUNCATION_NOTE,
    parse_json_object,
)
from friction_pipeline.config.settings import PipelineConfig, Settings
from friction_pipeline.errors import ClassificationError, ClassificationParseError
from friction_pipeline.models.schemas import RawInput


REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def status_error(cls, status_code):
    return cls("error", response=httpx.Response(status_code, request=REQUEST), body=None)


def completion(content):
    response = Mock()
    response.choices = [Mock(message=Mock(content=content))]
    return response


def judgment_json(**overrides):
    data = {
        "is_friction": True,
        "summary": "Export times out",
        "theme_key": "performance_issues",
        "severity": 4,
        "sentiment": "frustrated",
        "root_cause": "Slow report query",
        "evidence": ["export never finishes"],
    }
    data.update(overrides)
    return json.dumps(data)


@pytest.fixture
def mock_config():
    """Create a mock configuration."""
    config = Mock(spec=Settings)
    config.openai_api_key = "test-api-key"
    config.openai_llm_model = "gpt-4o-mini"
    config.openai_timeout_seconds = 60.0
    config.pipeline = PipelineConfig()
    return config


@pytest.fixture
def mock_sleep():
    return Mock()


@pytest.fixture
def raw_inputs():
    return [
        RawInput(
            id=f"raw-{i}",
            account_id="acc-1",
            user_id="user-1",
            source_type="salesforce_case",
            source_id=f"500{i}",
            text_content=f"Case #{i}: problem {i}",
        )
        for i in range(3)
    ]


class TestChatAgent:
    """Test ChatAgent retry behaviour."""

    @patch('friction_pipeline.agents.llm_agent.OpenAI')
    def test_agent_initialization(self, mock_openai, mock_config):
        """Test the client is built without its own retries."""
        agent = ChatAgent(mock_config)

        assert agent.model == "gpt-4o-mini"
        mock_openai.assert_called_once_with(api_key="test-api-key", timeout=60.0, max_retries=0)

    @patch('friction_pipeline.agents.llm_agent.OpenAI')
    def test_chat_single(self, mock_openai, mock_config, mock_sleep):
        """Test a successful call returns the reply text."""
        mock_openai.return_value.chat.completions.create.return_value = completion("Hello")
        agent = ChatAgent(mock_config, sleep=mock_sleep)

        assert agent.chat_single("Say hello") == "Hello"
        mock_sleep.assert_not_called()

    @patch('friction_pipeline.agents.llm_agent.OpenAI')
    def test_overload_retried_with_backoff(self, mock_openai, mock_config, mock_sleep):
        """Test two overloads then success waits 1s then 2s."""
        mock_openai.return_value.chat.completions.create.side_effect = [
            status_error(APIStatusError, 529),
            status_error(APIStatusError, 529),
            completion("ok"),
        ]
        agent = ChatAgent(mock_config, sleep=mock_sleep)

        assert agent.chat_single("prompt") == "ok"
        assert mock_sleep.call_args_list == [call(1.0), call(2.0)]

    @patch('friction_pipeline.agents.llm_agent.OpenAI')
    def test_rate_limit_and_connection_errors_retried(self, mock_openai, mock_config, mock_sleep):
        """Test rate limiting and transport failures are transient."""
        mock_openai.return_value.chat.completions.create.side_effect = [
            status_error(RateLimitError, 429),
            APIConnectionError(request=REQUEST),
            completion("ok"),
        ]
        agent = ChatAgent(mock_config, sleep=mock_sleep)

        assert agent.chat_single("prompt") == "ok"
        assert mock_sleep.call_count == 2

    @patch('friction_pipeline.agents.llm_agent.OpenAI')
    def test_exhausted_retries_raise(self, mock_openai, mock_config, mock_sleep):
        """Test persistent overload gives up after max_attempts calls."""
        create = mock_openai.return_value.chat.completions.create
        create.side_effect = status_error(APIStatusError, 529)
        agent = ChatAgent(mock_config, sleep=mock_sleep)

        with pytest.raises(ClassificationError):
            agent.chat_single("prompt")
        assert create.call_count == 3
        assert mock_sleep.call_count == 2

    @patch('friction_pipeline.agents.llm_agent.OpenAI')
    def test_client_errors_not_retried(self, mock_openai, mock_config, mock_sleep):
        """Test a 400 propagates immediately."""
        create = mock_openai.return_value.chat.completions.create
        create.side_effect = status_error(APIStatusError, 400)
        agent = ChatAgent(mock_config, sleep=mock_sleep)

        with pytest.raises(APIStatusError):
            agent.chat_single("prompt")
        assert create.call_count == 1
        mock_sleep.assert_not_called()

    @patch('friction_pipeline.agents.llm_agent.OpenAI')
    def test_backoff_capped(self, mock_openai, mock_config):
        """Test the delay never exceeds the cap."""
        agent = ChatAgent(mock_config)
        assert agent.backoff_delay(0) == 1.0
        assert agent.backoff_delay(10) == 30.0


class TestParseJsonObject:
    """Test reply extraction."""

    def test_plain_json(self):
        assert parse_json_object('{"summary": "x"}') == {"summary": "x"}

    def test_code_fences_stripped(self):
        """Test markdown fences around the object are ignored."""
        assert parse_json_object('```json\n{"summary": "x"}\n```') == {"summary": "x"}

    def test_surrounding_prose_stripped(self):
        """Test text before and after the object is ignored."""
        assert parse_json_object('Here you go: {"summary": "x"} Thanks!') == {"summary": "x"}

    @pytest.mark.parametrize("response", ["", "no json here", "[1, 2]", "{broken"])
    def test_malformed(self, response):
        with pytest.raises(ClassificationParseError):
            parse_json_object(response)


class TestFrictionClassifier:
    """Test FrictionClassifier."""

    @patch('friction_pipeline.agents.llm_agent.OpenAI')
    def test_truncation(self, mock_openai, mock_config):
        """Test long text is cut to the limit with a marker."""
        classifier = FrictionClassifier(mock_config)
        text = "a" * 2500

        truncated = classifier.truncate(text)

        assert truncated == "a" * 2000 + TRUNCATION_NOTE
        assert classifier.truncate("short") == "short"

    @patch('friction_pipeline.agents.llm_agent.OpenAI')
    def test_prompt_lists_themes(self, mock_openai, mock_config):
        """Test the prompt offers the theme catalogue and the case text."""
        classifier = FrictionClassifier(mock_config)
        prompt = classifier.build_prompt("Case #1: Export fails")

        assert "billing_confusion" in prompt
        assert "Case #1: Export fails" in prompt

    @patch('friction_pipeline.agents.llm_agent.OpenAI')
    def test_parse_full_judgment(self, mock_openai, mock_config):
        classifier = FrictionClassifier(mock_config)
        judgment = classifier.parse_judgment(judgment_json())

        assert judgment.summary == "Export times out"
        assert judgment.theme_key == "performance_issues"
        assert judgment.severity == 4
        assert judgment.sentiment == "frustrated"
        assert judgment.confidence == 0.7
        assert judgment.evidence == ["export never finishes"]

    @patch('friction_pipeline.agents.llm_agent.OpenAI')
    @pytest.mark.parametrize("severity", [None, "high", 0, 9, 2.5, True])
    def test_invalid_severity_defaults_to_3(self, mock_openai, severity, mock_config):
        classifier = FrictionClassifier(mock_config)
        judgment = classifier.parse_judgment(judgment_json(severity=severity))
        assert judgment.severity == 3

    @patch('friction_pipeline.agents.llm_agent.OpenAI')
    def test_missing_fields_use_defaults(self, mock_openai, mock_config):
        """Test theme, sentiment and root cause defaults."""
        classifier = FrictionClassifier(mock_config)
        judgment = classifier.parse_judgment('{"summary": "Something broke"}')

        assert judgment.theme_key == "other"
        assert judgment.sentiment == "neutral"
        assert judgment.root_cause == "Unknown"
        assert judgment.severity == 3

    @patch('friction_pipeline.agents.llm_agent.OpenAI')
    def test_unknown_theme_becomes_other(self, mock_openai, mock_config):
        classifier = FrictionClassifier(mock_config)
        judgment = classifier.parse_judgment(judgment_json(theme_key="made_up"))
        assert judgment.theme_key == "other"

    @patch('friction_pipeline.agents.llm_agent.OpenAI')
    def test_non_friction_normalised(self, mock_openai, mock_config):
        """Test routine support is stored as normal_support at severity 1."""
        classifier = FrictionClassifier(mock_config)
        judgment = classifier.parse_judgment(judgment_json(is_friction=False, severity=4))

        assert judgment.is_friction is False
        assert judgment.theme_key == "normal_support"
        assert judgment.severity == 1

    @pytest.mark.parametrize("flag", ["false", "False", " FALSE "])
    @patch('friction_pipeline.agents.llm_agent.OpenAI')
    def test_string_false_is_not_friction(self, mock_openai, flag, mock_config):
        """Test a quoted false is read as routine support."""
        classifier = FrictionClassifier(mock_config)
        judgment = classifier.parse_judgment(judgment_json(is_friction=flag, severity=4))

        assert judgment.is_friction is False
        assert judgment.theme_key == "normal_support"

    @pytest.mark.parametrize("flag", [True, "true", None])
    @patch('friction_pipeline.agents.llm_agent.OpenAI')
    def test_other_flags_default_to_friction(self, mock_openai, flag, mock_config):
        classifier = FrictionClassifier(mock_config)
        judgment = classifier.parse_judgment(judgment_json(is_friction=flag))

        assert judgment.is_friction is True
        assert judgment.severity == 4

    @patch('friction_pipeline.agents.llm_agent.OpenAI')
    def test_missing_summary_is_malformed(self, mock_openai, mock_config):
        classifier = FrictionClassifier(mock_config)
        with pytest.raises(ClassificationParseError):
            classifier.parse_judgment('{"severity": 2}')

    @patch('friction_pipeline.agents.llm_agent.OpenAI')
    def test_custom_themes(self, mock_openai, mock_config):
        """Test a loaded catalogue replaces the defaults but keeps other."""
        classifier = FrictionClassifier(mock_config)
        classifier.use_themes({"shipping_delay": "Late deliveries"})

        assert set(classifier.themes) == {"shipping_delay", "other"}
        judgment = classifier.parse_judgment(judgment_json(theme_key="billing_confusion"))
        assert judgment.theme_key == "other"

    @patch('friction_pipeline.agents.llm_agent.OpenAI')
    def test_classify_batch_skips_malformed(self, mock_openai, mock_config, mock_sleep, raw_inputs):
        """Test one malformed reply does not stop the rest of the batch."""
        mock_openai.return_value.chat.completions.create.side_effect = [
            completion(judgment_json()),
            completion("I cannot help with that."),
            completion(judgment_json(severity=2)),
        ]
        classifier = FrictionClassifier(mock_config, sleep=mock_sleep)

        cards, submitted, failed = classifier.classify_batch(raw_inputs)

        assert [c.raw_input_id for c in cards] == ["raw-0", "raw-2"]
        assert submitted == ["raw-0", "raw-1", "raw-2"]
        assert failed == []
        assert cards[0].account_id == "acc-1"
        assert cards[0].user_id == "user-1"
        assert cards[0].confidence_score == 0.7
        assert cards[0].reasoning == "Portfolio analysis"
        # fixed delay between calls, none before the first
        assert mock_sleep.call_args_list == [call(0.2), call(0.2)]

    @patch('friction_pipeline.agents.llm_agent.OpenAI')
    def test_classify_batch_reports_failures(self, mock_openai, mock_config, mock_sleep, raw_inputs):
        """Test records whose calls failed are not reported as submitted."""
        mock_openai.return_value.chat.completions.create.side_effect = [
            completion(judgment_json()),
            status_error(APIStatusError, 401),
            completion(judgment_json(is_friction=False, root_cause="Password reset")),
        ]
        classifier = FrictionClassifier(mock_config, sleep=mock_sleep)

        cards, submitted, failed = classifier.classify_batch(raw_inputs)

        assert submitted == ["raw-0", "raw-2"]
        assert failed == ["raw-1"]
        assert cards[1].is_friction is False
        assert cards[1].reasoning == "Non-friction: Password reset"
