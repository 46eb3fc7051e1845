"""
User-facing text sent over LINE.

Raw error text never reaches a user: every failure path picks one of the
canned messages below.
"""

# --- Error replies, chosen by error category ---
ANALYSIS_ERROR = (
    "申し訳ございません。分析処理中にエラーが発生しました。"
    "しばらく時間をおいて再度お試しください。"
)
SERVICE_TEMPORARY_ISSUE = (
    "AI分析サービスに一時的な問題が発生しています。"
    "しばらく時間をおいて再度お試しください。"
)
INVALID_INPUT = "日記の内容を読み取れませんでした。テキストで送ってください。"

# --- Analysis result layout ---
RESULT_TITLE = "📝 日記分析結果"
EMOTION_SECTION = "🎭 **感情分析**"
THEMES_SECTION = "🎯 **主なテーマ**"
PATTERNS_SECTION = "🔄 **行動パターン**"
POSITIVE_SECTION = "✨ **ポジティブポイント**"
CLOSING_MESSAGE = "今日もお疲れさまでした！明日も素敵な一日にしましょう 🌟"

# --- Fallback analysis fields ---
FALLBACK_EMOTION = "分析処理中にエラーが発生しました"
FALLBACK_THEMES = "分析処理中にエラーが発生しました"
FALLBACK_PATTERNS = "分析処理中にエラーが発生しました"
FALLBACK_POSITIVE_POINTS = "お疲れさまでした。明日も頑張りましょう！"
PLACEHOLDER_FIELD = "（分析情報なし）"

# --- Tier 3 ---
EMERGENCY_REPLY = "\n".join([
    "📝 日記を記録しました",
    "",
    "お疲れさまでした！今日も一日頑張りましたね。",
    "",
    "🚀 緊急モード (高負荷対応)",
])

# --- Background enrichment ---
ANALYSIS_PENDING = "\n".join([
    "📝 日記を記録しました！",
    "",
    "🔍 AI分析を実行中です...",
    "分析結果は少し後にお送りします。",
])
ENRICHMENT_PENDING_NOTE = "🔍 AIによる詳しい分析を後ほどお送りします。"
ENRICHMENT_DONE_HEADER = "🤖 AI詳細分析が完了しました"
ENRICHMENT_FAILED = "\n".join([
    "⚠️ AI分析でエラーが発生しました",
    "",
    "日記は正常に保存されています。",
    "時間をおいて再度お試しください。",
])
