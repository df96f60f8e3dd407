from unittest import mock

import pytest
import requests

from CompetitorWatch.Errors import SummarizationError
from CompetitorWatch.Summarizer import (
    CONTENT_LIMIT, OllamaSummarizer, build_prompt, clean_response, is_acceptable)


GOOD_SUMMARY = "タイトル：新型センサーを発表\n要約：**Acme** は新しい温度センサーを発表した。工場向けの製品である。"


def ollama_reply(text):
    response = mock.Mock()
    response.raise_for_status.return_value = None
    response.json.return_value = {'response': text}
    return response


@pytest.fixture
def session():
    return mock.Mock(spec=requests.Session)


class TestResponseHandling:

    def test_think_block_removed(self):
        assert clean_response("<think>\nlet me see\n</think>\n" + GOOD_SUMMARY) == GOOD_SUMMARY
        assert clean_response(None) == ''

    def test_acceptance(self):
        assert is_acceptable(GOOD_SUMMARY)
        assert is_acceptable("要約:" + "製品の説明文。" * 10)
        assert not is_acceptable("タイトル：短い")
        assert not is_acceptable("")

    def test_prompt_truncates_content(self):
        prompt = build_prompt('Title', 'x' * (CONTENT_LIMIT + 500))
        assert 'x' * CONTENT_LIMIT in prompt
        assert 'x' * (CONTENT_LIMIT + 1) not in prompt
        assert '記事タイトル: Title' in prompt

    def test_product_prompt(self):
        assert '製品名: Sensor X' in build_prompt('Sensor X', 'spec sheet', is_product=True)


class TestOllamaSummarizer:

    def test_request_shape(self, session):
        session.post.return_value = ollama_reply(GOOD_SUMMARY)
        summarizer = OllamaSummarizer('http://ollama:11434/', model='qwen3:8b', timeout_s=30, session=session)

        assert summarizer.summarize('Title', 'Body') == GOOD_SUMMARY

        url = session.post.call_args.args[0]
        payload = session.post.call_args.kwargs['json']
        assert url == 'http://ollama:11434/api/generate'
        assert payload['model'] == 'qwen3:8b'
        assert payload['stream'] is False
        assert payload['options'] == {'temperature': 0.3, 'num_predict': 800}
        assert session.post.call_args.kwargs['timeout'] == 30

    def test_retries_malformed_output(self, session):
        session.post.side_effect = [ollama_reply('<think>...</think>'), ollama_reply(GOOD_SUMMARY)]
        assert OllamaSummarizer(session=session).summarize('Title', 'Body') == GOOD_SUMMARY
        assert session.post.call_count == 2

    def test_gives_up_after_retries(self, session):
        session.post.return_value = ollama_reply('')
        with pytest.raises(SummarizationError):
            OllamaSummarizer(retries=2, session=session).summarize('Title', 'Body')
        assert session.post.call_count == 3

    def test_transport_error(self, session):
        session.post.side_effect = requests.exceptions.ConnectionError('refused')
        with pytest.raises(SummarizationError, match='refused'):
            OllamaSummarizer(session=session).summarize('Title', 'Body')

    def test_http_error(self, session):
        response = ollama_reply(GOOD_SUMMARY)
        response.raise_for_status.side_effect = requests.exceptions.HTTPError('500 Server Error')
        session.post.return_value = response
        with pytest.raises(SummarizationError):
            OllamaSummarizer(session=session).generate('prompt')
