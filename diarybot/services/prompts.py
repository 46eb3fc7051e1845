"""
Chat prompts. Wording is tunable; the shape of each message list is not.
"""
from __future__ import annotations

from typing import Optional, Sequence

from diarybot.services.llm import ChatMessage

# Tier 1: short free-text reading, merged with the keyword heuristic.
TIERED_SYSTEM_PROMPT = "あなたは日記分析の専門家です。簡潔で温かい分析を提供してください。"

# Background enrichment: structured JSON, parsed by response_parser.
DIARY_ANALYSIS_SYSTEM_PROMPT = """あなたはユーザーの日記を分析し、心理的サポートを提供するAIアシスタントです。

日記の内容を読み、以下の4つの観点から分析を行い、JSON形式で構造化された結果を返してください：

1. emotion: 現在の感情状態と感情の変化（100文字以内）
2. themes: 主要なテーマや思考パターン（100文字以内）
3. patterns: 行動パターンや習慣の特徴（100文字以内）
4. positive_points: ポジティブな点・成長の兆し・励ましのメッセージ（150文字以内）

必ず以下のJSON形式で回答してください：
{
  "emotion": "感情分析の結果",
  "themes": "主要テーマの分析",
  "patterns": "パターン分析の結果",
  "positive_points": "ポジティブな点と励ましのメッセージ"
}

親しみやすく温かみのある文体で、ユーザーに寄り添うような分析を心がけてください。"""

SUMMARY_SYSTEM_PROMPT = """あなたは日記の要約を作成する専門家です。
ユーザーの過去の日記を読み、以下の観点を含む150文字以内の簡潔な要約を作成してください：

1. 感情の傾向と変化
2. 繰り返し現れるテーマ
3. 行動パターン
4. 成長の兆し

要約は次回の日記分析の文脈として使われます。事実に基づき、簡潔に書いてください。"""


def _diary_with_history(text: str, summary: Optional[str], history_label: str, diary_label: str) -> str:
    if summary:
        return f"{history_label}\n{summary}\n\n{diary_label}\n{text}"
    return f"{diary_label}\n{text}"


def build_tiered_messages(text: str, summary: Optional[str]) -> list[ChatMessage]:
    return [
        {"role": "system", "content": TIERED_SYSTEM_PROMPT},
        {"role": "user", "content": _diary_with_history(text, summary, "【過去の傾向】", "【今日の日記】")},
    ]


def build_analysis_messages(text: str, summary: Optional[str]) -> list[ChatMessage]:
    return [
        {"role": "system", "content": DIARY_ANALYSIS_SYSTEM_PROMPT},
        {"role": "user", "content": _diary_with_history(text, summary, "【過去7日間の傾向】", "【本日の日記】")},
    ]


def build_summary_messages(entries: Sequence[str]) -> list[ChatMessage]:
    numbered = "\n\n".join(f"{i}. {content}" for i, content in enumerate(entries, start=1))
    return [
        {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
        {"role": "user", "content": f"以下は過去7日間の日記です：\n\n{numbered}"},
    ]
