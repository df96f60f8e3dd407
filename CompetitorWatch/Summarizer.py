import re
import logging
from abc import ABC, abstractmethod
from typing import Optional

import requests

from CompetitorWatch.Errors import SummarizationError


logger = logging.getLogger(__name__)

CONTENT_LIMIT = 4000

THINK_BLOCK_RE = re.compile(r'<think>[\s\S]*?</think>')
TITLE_MARKER_RE = re.compile(r'タイトル[：:]')
SUMMARY_MARKER_RE = re.compile(r'要約[：:]')


ARTICLE_PROMPT = """あなたは大手ニュースメディアの編集者です。以下の記事について、2つの作業を行ってください。
本文に記載されていない情報は絶対に追加しないでください。

【作業1】読みたくなる日本語タイトルを1つ作成
想定読者：20〜40代のビジネスパーソン
タイトルは30文字以内で、記事の核心を捉えたものにしてください。

【作業2】日本語の要約文を3〜4文、100〜150文字程度で作成
ルール：
- 製品名・技術名・企業名は原語のまま記載
- 重要なキーワード（技術名、規格名、数値、企業名など）は **太字** で囲む
- 核心となる事実とビジネスインパクトを簡潔にまとめる
- 推測は含めず、記事に記載された事実のみ

出力形式（必ずこの形式で出力してください）：
タイトル：（日本語タイトル）
要約：（要約文）

thinkタグは出力しないでください。

記事タイトル: {title}
記事本文:
{content}"""


PRODUCT_PROMPT = """あなたは産業用デバイスの製品アナリストです。以下の製品情報について、2つの作業を行ってください。
本文に記載されていない情報は絶対に追加しないでください。

【作業1】わかりやすい日本語の製品タイトルを1つ作成
- 製品名は原語のまま含める
- 主な用途や特長がわかるようにする
- 30文字以内

【作業2】日本語の製品紹介文を3〜4文、100〜150文字程度で作成
ルール：
- 製品名・型番は原語のまま記載
- 重要なキーワード（技術名、規格名、数値、企業名など）は **太字** で囲む
- 主な仕様と対象業界を簡潔にまとめる
- 推測は含めず、記載された事実のみ

出力形式（必ずこの形式で出力してください）：
タイトル：（日本語タイトル）
要約：（製品紹介文）

thinkタグは出力しないでください。

製品名: {title}
製品情報:
{content}"""


class ISummarizer(ABC):
    @abstractmethod
    def summarize(self, title: str, content: str, is_product: bool = False) -> str:
        """
        Returns text carrying the literal markers 'タイトル：' and '要約：'.

        :raises SummarizationError: No acceptable output after the implementation's retries.
        """
        pass


def clean_response(text: str) -> str:
    """Drops <think> blocks that reasoning models emit before the answer."""
    return THINK_BLOCK_RE.sub('', text or '').strip()


def is_acceptable(text: str) -> bool:
    has_title = bool(TITLE_MARKER_RE.search(text))
    has_summary = bool(SUMMARY_MARKER_RE.search(text))
    if len(text) > 20 and has_title and has_summary:
        return True
    # A missing title line is tolerated when the summary is substantial
    return len(text) > 50 and has_summary


def build_prompt(title: str, content: str, is_product: bool = False) -> str:
    template = PRODUCT_PROMPT if is_product else ARTICLE_PROMPT
    return template.format(title=title, content=(content or '')[:CONTENT_LIMIT])


class OllamaSummarizer(ISummarizer):
    """Summaries from a local Ollama server through /api/generate."""

    def __init__(self,
                 base_url: str = 'http://localhost:11434',
                 model: str = 'qwen3:8b',
                 timeout_s: int = 120,
                 retries: int = 2,
                 temperature: float = 0.3,
                 num_predict: int = 800,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.model = model
        self.timeout = timeout_s
        self.retries = retries
        self.temperature = temperature
        self.num_predict = num_predict
        self.session = session or requests.Session()

    def generate(self, prompt: str) -> str:
        try:
            resp = self.session.post(
                f"{self.base_url}/api/generate",
                json={
                    'model': self.model,
                    'prompt': prompt,
                    'stream': False,
                    'options': {'temperature': self.temperature, 'num_predict': self.num_predict},
                },
                timeout=self.timeout,
            )
            resp.raise_for_status()
            data = resp.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            raise SummarizationError(f"Ollama API error: {e}") from e
        return clean_response(data.get('response') or '')

    def summarize(self, title: str, content: str, is_product: bool = False) -> str:
        prompt = build_prompt(title, content, is_product)
        for attempt in range(self.retries + 1):
            response = self.generate(prompt)
            if is_acceptable(response):
                return response
            if attempt < self.retries:
                logger.warning(f"Empty or malformed summary, retrying ({attempt + 1}/{self.retries})...")
        raise SummarizationError(f"Ollama returned no usable summary after {self.retries + 1} attempts")
