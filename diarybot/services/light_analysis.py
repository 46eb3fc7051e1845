"""
Keyword heuristic for diary text.

Rules:
- Pure and synchronous: no I/O, no randomness, no LLM.
- Bounded work: only the first MAX_SCAN_CHARS characters are scanned.
- Never raises. Empty input and internal errors both yield FALLBACK.

Public API
----------
LightAnalyzer.analyze(text)          -> LightAnalysisResult
LightAnalyzer.format_for_user(result) -> str
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace

from diarybot.core import messages

logger = logging.getLogger(__name__)

MAX_SCAN_CHARS = 5000

CONFIDENCE_LOW = "low"
CONFIDENCE_MEDIUM = "medium"
CONFIDENCE_HIGH = "high"


# ---------------------------------------------------------------------------
# Dictionaries
# ---------------------------------------------------------------------------

_POSITIVE = (
    "うれしい", "うれしかった", "たのしい", "たのしかった", "よかった", "すてき",
    "がんばった", "できた", "よろこび", "しあわせ", "まんぞく", "やすらか",
    "嬉しい", "嬉しかった", "楽しい", "楽しかった", "楽し", "楽", "良かった",
    "素敵", "頑張った", "喜び", "幸せ", "満足", "安らか", "ありがと", "感謝",
    "おいしい", "美味しい", "すばらしい", "素晴らしい", "感動", "元気",
    "happy", "glad", "great", "fun", "thanks",
)

_NEGATIVE = (
    "つらい", "かなしい", "いやだ", "つかれた", "しんどい", "むかつく",
    "いらいら", "ふあん", "しんぱい", "こまった", "だめ", "わるい",
    "辛い", "悲しい", "嫌だ", "疲れた", "イライラ", "不安", "心配", "困った",
    "駄目", "ダメ", "悪い", "ストレス", "きつい", "落ち込",
    "sad", "tired", "angry", "stress", "anxious",
)

_THEMES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("お仕事", ("しごと", "仕事", "会社", "かいしゃ", "職場", "プロジェクト", "残業", "会議", "work", "office")),
    ("人間関係", ("友達", "ともだち", "友人", "かぞく", "家族", "恋人", "彼氏", "彼女", "夫", "妻", "子供", "friend", "family")),
    ("健康", ("健康", "けんこう", "体調", "たいちょう", "病気", "びょうき", "医者", "病院", "運動", "health")),
    ("学習", ("勉強", "べんきょう", "学校", "がっこう", "テスト", "試験", "しけん", "授業", "study", "school")),
    ("趣味", ("趣味", "しゅみ", "ゲーム", "読書", "どくしょ", "映画", "えいが", "音楽", "game", "movie", "music")),
    ("日常生活", ("今日", "きょう", "朝", "あさ", "昼", "ひる", "夜", "よる", "買い物", "かいもの", "today")),
)

_EMOTION_POSITIVE = "今日はポジティブな気持ちが感じられますね。良い一日だったようです。"
_EMOTION_NEGATIVE = "ちょっと大変な一日だったようですが、それでも頑張っているあなたは素晴らしいです。"
_EMOTION_CALM = "落ち着いた気持ちで過ごされたようですね。穏やかな一日でした。"

_THEMES_GENERIC = "日常の出来事について思いを巡らせていますね。"
_PATTERNS_GENERIC = "自然体で思いを表現されていますね。"

_POSITIVE_TEMPLATES = (
    "きちんと日記を書く習慣を続けているのは素晴らしいことです。",
    "自分の気持ちを言葉にできているのは大きな成長ですね。",
    "今日も一日お疲れさまでした。振り返る時間を大切にしていますね。",
    "思いを文字にすることで心が整理されていると思います。",
    "継続は力なり。日記を書く習慣が素敵です。",
)
_LONG_ENTRY_TEMPLATE = "しっかりと詳しく書けているのは内省力の表れですね。"


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LightAnalysisResult:
    emotion: str
    themes: str
    patterns: str
    positive_points: str
    confidence: str
    processing_time_ms: float
    sentiment: str = "neutral"
    keyword_matches: int = 0


FALLBACK = LightAnalysisResult(
    emotion="お疲れさまでした。",
    themes="日常の出来事について考えていらっしゃいますね。",
    patterns="自然体で思いを表現されています。",
    positive_points="今日も日記を書く時間を作れたのは素晴らしいことです。",
    confidence=CONFIDENCE_LOW,
    processing_time_ms=0.0,
)


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------

def _hits(text: str, keywords: tuple[str, ...]) -> int:
    return sum(1 for keyword in keywords if keyword in text)


class LightAnalyzer:
    """Stateless; one instance can be shared by every request."""

    def __init__(self, max_scan_chars: int = MAX_SCAN_CHARS):
        self.max_scan_chars = max_scan_chars

    def analyze(self, text: str) -> LightAnalysisResult:
        started = time.perf_counter()
        try:
            if not text or not text.strip():
                return self._fallback(started)
            return self._analyze(text, started)
        except Exception:
            logger.exception("Light analysis failed, returning fallback")
            return self._fallback(started)

    def _analyze(self, text: str, started: float) -> LightAnalysisResult:
        char_count = len(text)
        scanned = text[: self.max_scan_chars]
        folded = scanned.casefold()

        positive = _hits(folded, _POSITIVE)
        negative = _hits(folded, _NEGATIVE)
        if positive > negative:
            sentiment, emotion = "positive", _EMOTION_POSITIVE
        elif negative > positive:
            sentiment, emotion = "negative", _EMOTION_NEGATIVE
        else:
            sentiment, emotion = "neutral", _EMOTION_CALM

        theme_names = []
        theme_hits = 0
        for name, keywords in _THEMES:
            hits = _hits(folded, keywords)
            if hits:
                theme_names.append(name)
                theme_hits += hits
        if theme_names:
            themes = f"主に{'、'.join(theme_names)}について考えていらっしゃいますね。"
        else:
            themes = _THEMES_GENERIC

        matches = positive + negative + theme_hits

        return LightAnalysisResult(
            emotion=emotion,
            themes=themes,
            patterns=self._patterns(scanned, char_count),
            positive_points=self._positive_points(char_count),
            confidence=self._confidence(char_count, matches),
            processing_time_ms=(time.perf_counter() - started) * 1000,
            sentiment=sentiment,
            keyword_matches=matches,
        )

    @staticmethod
    def _patterns(text: str, char_count: int) -> str:
        found = []
        if char_count > 300:
            found.append("詳しく書く習慣")
        elif char_count < 50:
            found.append("簡潔に表現する傾向")
        if text.count("\n") + 1 > 5:
            found.append("構造化して考える習慣")
        if "？" in text or "?" in text:
            found.append("自問自答する思考パターン")
        if "！" in text or "!" in text:
            found.append("感情表現豊かな表現力")
        if not found:
            return _PATTERNS_GENERIC
        return f"{'、'.join(found)}が見られます。"

    @staticmethod
    def _positive_points(char_count: int) -> str:
        templates = _POSITIVE_TEMPLATES
        if char_count > 200:
            templates = templates + (_LONG_ENTRY_TEMPLATE,)
        return templates[char_count % len(templates)]

    @staticmethod
    def _confidence(char_count: int, matches: int) -> str:
        score = 0
        if char_count > 100:
            score += 1
        if char_count > 200:
            score += 1
        if matches > 2:
            score += 1
        if matches > 5:
            score += 1
        if score >= 3:
            return CONFIDENCE_HIGH
        if score >= 2:
            return CONFIDENCE_MEDIUM
        return CONFIDENCE_LOW

    @staticmethod
    def _fallback(started: float) -> LightAnalysisResult:
        return replace(FALLBACK, processing_time_ms=(time.perf_counter() - started) * 1000)

    @staticmethod
    def format_for_user(result: LightAnalysisResult) -> str:
        return "\n".join([
            messages.RESULT_TITLE,
            "",
            messages.EMOTION_SECTION,
            result.emotion,
            "",
            messages.THEMES_SECTION,
            result.themes,
            "",
            messages.PATTERNS_SECTION,
            result.patterns,
            "",
            messages.POSITIVE_SECTION,
            result.positive_points,
            "",
            messages.CLOSING_MESSAGE,
            "",
            f"💻 軽量分析 ({result.processing_time_ms:.1f}ms, 信頼度: {result.confidence})",
        ])
