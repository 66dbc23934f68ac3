"""
Metering Configuration and Constants

Model rates, subscription plans, credential limits and ledger tuning live here.
Token amounts are integers; plan prices are in cents (USD).
"""

# ==================== MODEL RATES ====================
# Tokens charged per 1000 estimated units of input
MODEL_CATALOG = {
    "gpt4": {
        "name": "GPT-4",
        "cost_per_1000": 8,
        "description": "Most capable GPT-4 model for various tasks"
    },
    "gemini": {
        "name": "Gemini",
        "cost_per_1000": 5,
        "description": "Google's advanced language model"
    },
    "claude": {
        "name": "Claude",
        "cost_per_1000": 6,
        "description": "Anthropic's Claude model for detailed analysis"
    },
    "deepseek": {
        "name": "DeepSeek",
        "cost_per_1000": 4,
        "description": "Efficient model for general tasks"
    }
}

DEFAULT_MODEL = "deepseek"

# Rough input size estimate: one unit per 4 characters
CHARS_PER_UNIT = 4

# ==================== UPSTREAM PROVIDERS ====================
# Every model is served through an OpenAI-compatible chat completions endpoint
PROVIDER_ENDPOINTS = {
    "gpt4": {
        "upstream_model": "gpt-4o",
        "base_url": None,
        "api_key_env": "OPENAI_API_KEY"
    },
    "gemini": {
        "upstream_model": "gemini-2.0-flash",
        "base_url": "https://generativelanguage.googleapis.com/v1beta/openai/",
        "api_key_env": "GEMINI_API_KEY"
    },
    "claude": {
        "upstream_model": "claude-sonnet-4-5",
        "base_url": "https://api.anthropic.com/v1/",
        "api_key_env": "ANTHROPIC_API_KEY"
    },
    "deepseek": {
        "upstream_model": "deepseek-chat",
        "base_url": "https://api.deepseek.com",
        "api_key_env": "DEEPSEEK_API_KEY"
    }
}

COMPLETION_TIMEOUT_SECONDS = 60
COMPLETION_MAX_TOKENS = 1000

# ==================== SUBSCRIPTION PLANS ====================
# tokens=None is the "unlimited" sentinel
SUBSCRIPTION_PLANS = {
    "free": {
        "name": "Free",
        "tokens": 1000,
        "price": 0,
        "description": "Start with 1000 free tokens"
    },
    "basic": {
        "name": "Basic",
        "tokens": 100000,
        "price": 1000,
        "description": "100k tokens with all models"
    },
    "pro": {
        "name": "Pro",
        "tokens": 1000000,
        "price": 5000,
        "description": "1M tokens with priority access"
    },
    "unlimited": {
        "name": "Unlimited",
        "tokens": None,
        "price": 20000,
        "description": "Unlimited tokens for enterprise use"
    }
}

PURCHASABLE_PLANS = ("basic", "pro", "unlimited")

TIERS = ("free", "basic", "pro", "unlimited")
UNLIMITED_TIER = "unlimited"

PAYMENT_CURRENCY = "usd"

# ==================== ACCOUNTS & CREDENTIALS ====================
INITIAL_FREE_TOKENS = 1000
MAX_API_KEYS = 5
API_KEY_PREFIX = "sk-"
API_KEY_CREATE_INTERVAL_SECONDS = 10

# ==================== LEDGER ====================
MAX_BALANCE = 2 ** 53
PENDING_CHARGE_GRACE_MINUTES = 15

# ==================== REPORTING ====================
EXCERPT_LENGTH = 100
STORED_EXCERPT_LENGTH = 2000
DEFAULT_USAGE_DAYS = 7
PAYMENT_HISTORY_LIMIT = 10

# ==================== STRIPE EVENTS ====================
PAYMENT_SUCCEEDED_EVENT = "payment_intent.succeeded"
PAYMENT_FAILED_EVENT = "payment_intent.payment_failed"

# ==================== ERROR MESSAGES ====================
ERROR_MESSAGES = {
    "UNAUTHENTICATED": "API key is required",
    "BEARER_REQUIRED": "Authorization token required",
    "INVALID_API_KEY": "Invalid API key",
    "INVALID_BEARER": "Invalid authorization token",
    "INSUFFICIENT_TOKENS": "Insufficient tokens",
    "INVALID_MESSAGES": "Invalid messages format",
    "INVALID_MODEL": "Invalid model specified",
    "MAX_API_KEYS": "Maximum number of API keys reached",
    "API_KEY_RATE_LIMIT": "API keys are being created too quickly. Please wait before creating another.",
    "UPSTREAM_UNAVAILABLE": "The model is temporarily unavailable. Your tokens were refunded.",
    "INVALID_SIGNATURE": "Webhook signature verification failed",
    "INVALID_PLAN": "Invalid subscription plan",
    "ACCOUNT_NOT_FOUND": "User not found",
    "API_KEY_NOT_FOUND": "API key not found",
    "USAGE_RECORDING_FAILED": "Usage could not be recorded. Your tokens were refunded.",
    "INTERNAL": "Internal server error"
}
