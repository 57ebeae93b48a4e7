import json

import pytest
import requests

import extraction
from extraction import (
    ExtractionError,
    ExtractionMalformed,
    ExtractionTimeout,
    LlmExtractor,
    NameExtractionResult,
    RateLimiter,
    RuleExtractor,
    from_payload,
    parse_response,
)

WORKED_EXAMPLES = [
    ('{"success":true,"title":"盗梦空间","year":"2010","type":"movie"}',
     {"success": True, "title": "盗梦空间", "year": "2010", "type": "movie"}),
    ('{"success":true,"title":"Breaking Bad","season":5,"episode":14,"type":"tv"}',
     {"success": True, "title": "Breaking Bad", "season": 5, "episode": 14, "type": "tv"}),
    ('{"success":false,"reason":"缺少剧名信息","type":"tv"}',
     {"success": False, "reason": "缺少剧名信息", "type": "tv"}),
    ('{"success":false,"reason":"非视频文件","type":"unknown"}',
     {"success": False, "reason": "非视频文件", "type": "unknown"}),
]


@pytest.mark.parametrize("raw,expected", WORKED_EXAMPLES)
def test_worked_examples_parse_to_contract(raw, expected) -> None:
    assert parse_response(raw).to_dict() == expected


def test_code_fences_and_prose_are_tolerated() -> None:
    raw = 'Sure!\n```json\n{"success": true, "title": "Heat", "year": 1995, "type": "movie"}\n```'
    result = parse_response(raw)
    assert result == NameExtractionResult(True, "movie", "Heat", "1995")


def test_legacy_movie_matches_new_format() -> None:
    legacy = from_payload({"success": True, "filename": "盗梦空间 (2010).mkv", "type": "movie"})
    current = from_payload({"success": True, "title": "盗梦空间", "year": "2010", "type": "movie"})
    assert legacy == current


def test_legacy_episode_matches_new_format() -> None:
    legacy = from_payload({"success": True, "filename": "Breaking Bad S05E14.mkv", "type": "tv"})
    current = from_payload({"success": True, "title": "Breaking Bad", "season": 5,
                            "episode": 14, "type": "tv"})
    assert legacy == current


@pytest.mark.parametrize("filename,title", [
    ("Blade Runner 2049.mkv", "Blade Runner 2049"),
    ("1917.mkv", "1917"),
])
def test_legacy_bare_numbers_stay_in_title(filename, title) -> None:
    result = from_payload({"success": True, "filename": filename, "type": "movie"})
    assert result == NameExtractionResult(True, "movie", title)


def test_legacy_year_only_from_parentheses() -> None:
    result = from_payload({"success": True, "filename": "Blade Runner 2049 (2017).mkv", "type": "movie"})
    assert (result.title, result.year) == ("Blade Runner 2049", "2017")
    result = from_payload({"success": True, "filename": "1917 (2019).mkv", "type": "movie"})
    assert (result.title, result.year) == ("1917", "2019")


def test_legacy_failure_keeps_reason() -> None:
    result = from_payload({"success": False, "filename": "", "type": "tv", "reason": "缺少剧名信息"})
    assert result.to_dict() == {"success": False, "reason": "缺少剧名信息", "type": "tv"}


@pytest.mark.parametrize("raw", [
    "I could not parse that filename.",
    '{"title": "Heat"}',
    '{"success": "yes", "title": "Heat"}',
    '{"success": true, "type": "movie"}',
    '{"success": true, "title": "Heat",',
    "[1, 2, 3]",
])
def test_malformed_responses_raise(raw) -> None:
    with pytest.raises(ExtractionMalformed):
        parse_response(raw)


def test_invalid_fields_are_dropped() -> None:
    result = from_payload({"success": True, "title": "Show", "year": "20xx",
                           "season": 0, "episode": "3", "type": "tv"})
    assert result.year is None
    assert result.season is None
    assert result.episode == 3


def test_season_episode_only_for_tv() -> None:
    result = from_payload({"success": True, "title": "Heat", "season": 1,
                           "episode": 2, "type": "movie"})
    assert result.season is None and result.episode is None


def test_unknown_type_is_explicit() -> None:
    result = from_payload({"success": True, "title": "Clip", "type": "documentary"})
    assert result.type == "unknown"


# ---------------------------------------------------------------------------
# Rule-based collaborator
# ---------------------------------------------------------------------------

def test_rule_extractor_movie() -> None:
    result = RuleExtractor().extract("盗梦空间.2010.1080p.BluRay.x264.mkv")
    assert result.to_dict() == {"success": True, "title": "盗梦空间", "year": "2010", "type": "movie"}


def test_rule_extractor_episode() -> None:
    result = RuleExtractor().extract("Breaking Bad S05E14 Ozymandias 1080p.mkv")
    assert result.to_dict() == {"success": True, "title": "Breaking Bad",
                                "season": 5, "episode": 14, "type": "tv"}


def test_rule_extractor_episode_without_title() -> None:
    result = RuleExtractor().extract("S01E05.mkv")
    assert result.to_dict() == {"success": False, "reason": "缺少剧名信息", "type": "tv"}


def test_rule_extractor_uses_directory_hint() -> None:
    result = RuleExtractor().extract("S01E05.mkv", hint="Breaking Bad")
    assert result.success
    assert result.title == "Breaking Bad"
    assert (result.season, result.episode) == (1, 5)


def test_rule_extractor_non_video() -> None:
    result = RuleExtractor().extract("random_file.txt")
    assert result.to_dict() == {"success": False, "reason": "非视频文件", "type": "unknown"}


# ---------------------------------------------------------------------------
# LLM collaborator
# ---------------------------------------------------------------------------

class _Response:
    def __init__(self, status_code: int, payload=None):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError("no body")
        return self._payload


def _completion(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def test_llm_extractor_sends_contract_request(monkeypatch) -> None:
    client = LlmExtractor("https://ai.local/v1/", "key", model="m", qpm_limit=0)
    sent = {}

    def fake_post(url, json=None, timeout=None):
        sent.update(url=url, body=json, timeout=timeout)
        return _Response(200, _completion(
            '{"success":true,"title":"Breaking Bad","season":5,"episode":14,"type":"tv"}'))

    monkeypatch.setattr(client._session, "post", fake_post)
    result = client.extract("Breaking Bad S05E14 Ozymandias 1080p.mkv", hint="Season 5")

    assert sent["url"] == "https://ai.local/v1/chat/completions"
    assert sent["body"]["model"] == "m"
    assert sent["body"]["temperature"] == 0.1
    assert sent["body"]["max_tokens"] == 300
    user = sent["body"]["messages"][1]["content"]
    assert "Season 5" in user and "Ozymandias" in user
    assert client._session.headers["Authorization"] == "Bearer key"
    assert result.season == 5 and result.episode == 14


def test_llm_extractor_maps_timeouts(monkeypatch) -> None:
    client = LlmExtractor("https://ai.local/v1", "key", qpm_limit=0)

    def fake_post(*args, **kwargs):
        raise requests.exceptions.ReadTimeout("slow")

    monkeypatch.setattr(client._session, "post", fake_post)
    with pytest.raises(ExtractionTimeout):
        client.extract("a.mkv")


@pytest.mark.parametrize("status,error", [(429, ExtractionTimeout), (503, ExtractionTimeout),
                                          (401, ExtractionError)])
def test_llm_extractor_maps_http_errors(monkeypatch, status, error) -> None:
    client = LlmExtractor("https://ai.local/v1", "key", qpm_limit=0)
    monkeypatch.setattr(client._session, "post", lambda *a, **k: _Response(status, {}))
    with pytest.raises(error):
        client.extract("a.mkv")


def test_llm_extractor_free_text_is_malformed(monkeypatch) -> None:
    client = LlmExtractor("https://ai.local/v1", "key", qpm_limit=0)
    monkeypatch.setattr(client._session, "post",
                        lambda *a, **k: _Response(200, _completion("It is Inception.")))
    with pytest.raises(ExtractionMalformed):
        client.extract("a.mkv")


def test_default_prompt_lists_worked_examples() -> None:
    for raw, expected in WORKED_EXAMPLES:
        assert json.loads(raw) == expected
        assert raw in extraction.DEFAULT_PROMPT


def test_rate_limiter_waits_for_window() -> None:
    now = [0.0]
    waits = []

    def sleep(seconds):
        waits.append(seconds)
        now[0] += seconds

    limiter = RateLimiter(2, clock=lambda: now[0], sleep=sleep)
    limiter.acquire()
    now[0] = 10.0
    limiter.acquire()
    limiter.acquire()
    assert waits == [50.0]
