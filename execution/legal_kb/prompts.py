"""
Prompt Templates, Tool Declarations and User-Facing Text

All model prompts, the consultant tool declaration, progress-step labels and
user-visible messages (Traditional Chinese) live here. Modules import from
here instead of defining text inline.
"""

# =============================================================================
# Model prompts
# =============================================================================

LLM_PROMPTS = {
    "keyword_extraction": """作為中國法律專家，分析以下用戶查詢並生成最佳的搜索關鍵詞：

用戶查詢: "{query}"

請提供3-5個最相關的法律搜索關鍵詞，這些關鍵詞應該：
1. 包含核心法律概念
2. 使用中國法律術語
3. 涵蓋相關的法律領域
4. 適合向量搜索

只返回關鍵詞，每行一個，不要其他解釋。
""",

    "grounded_answer": """你是中國法律專家AI助手。基於以下法律文件內容，回答用戶的法律問題。

用戶問題: "{question}"

相關法律文件:
{context}

請提供專業、準確的法律答案，要求：
1. 只根據提供的法律文件內容作答
2. 使用繁體中文回答
3. 結構清晰，包含要點
4. 如果文件內容不足以回答，請明確說明限制
5. 提及相關的法律條文或規定

答案:
""",

    "consultant_system": """你是專業的中國法律顧問AI助手。請遵循以下原則：

1. 提供專業、準確的中國法律建議
2. 必需先在中國法律知識庫中搜尋相關資訊
3. 使用繁體中文回答
4. 保持對話的連貫性和上下文理解
5. 當需要更詳細的法律資訊時，主動詢問相關細節
6. 引用相關的中國法律條文和案例
7. 保持專業但友善的語調
8. 如果涉及複雜法律問題，建議尋求專業律師協助
9. 基於對話歷史提供連貫的建議
10. 如果信息不足，請說明限制並要求更多細節
""",
}

# =============================================================================
# Consultant tool
# =============================================================================

SEARCH_TOOL_NAME = "searchLegalKnowledgeBase"

SEARCH_TOOL = {
    "type": "function",
    "function": {
        "name": SEARCH_TOOL_NAME,
        "description": (
            "根據提供的關鍵字，從中國法律知識庫中檢索相關的內容片段。"
            "適用於查詢法律資訊、法規條文或案例資料。"
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "keywords": {
                    "type": "string",
                    "description": (
                        "用於查詢法律知識庫的關鍵字或詞語。"
                        "建議輸入與法律主題、條文名稱、法規或案例相關的詞彙。"
                    ),
                },
            },
            "required": ["keywords"],
        },
    },
}

# Appended after narrative text the model emits alongside a tool call
NARRATIVE_SEPARATOR = "\n---\n"

# =============================================================================
# Progress steps
# =============================================================================

STEPS = {
    "processing_input": "正在處理輸入...",
    "generating_keywords": "正在生成搜尋關鍵字...",
    "embedding": "正在生成嵌入向量以用於搜尋...",
    "searching": "正在搜尋文件...",
    "generating_answer": "正在生成 AI 答案...",
    "generating_response": "正在生成回應...",
    "processing_tool_calls": "正在處理函數調用請求...",
    "no_results_warning": "在法律知識庫中找不到相關資料",
}

# =============================================================================
# User-facing messages
# =============================================================================

# Noun used in validation messages, per feature
INPUT_LABELS = {
    "search": "查詢",
    "qa": "問題",
    "consultant": "訊息",
}

MESSAGES = {
    "no_relevant_documents": "找不到與您的問題相關的法律文件",
    "ai_failed": "AI 處理失敗",
    "internal_error": "內部伺服器錯誤",
    "unauthorized": "未經授權",
    "profile_unavailable": "無法獲取用戶資料",
    "access_denied": "存取遭拒",
    "consultant_access_denied": "存取遭拒 - 顧問功能需要付費訂閱",
    "pro_model_denied": "Pro 模型存取需要 VIP 訂閱",
    "insufficient_tokens": "代幣不足",
    "conversation_not_found": "找不到對話",
    "input_required": "{label}是必需的",
    "input_too_long": "{label}太長 (最多 {limit} 個字元)",
}

CONVERSATION_TITLE = "諮詢: {excerpt}..."
FALLBACK_CONVERSATION_TITLE = "對話 {date}"
