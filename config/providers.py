"""Per-provider rate budgets and role routing."""

# Requests-per-minute and tokens-per-minute ceilings, one row per provider.
PROVIDER_LIMITS = {
    "anthropic": {"rpm": 50, "tpm": 40_000},
    "groq":      {"rpm": 30, "tpm": 6_000},
    "bedrock":   {"rpm": 50, "tpm": 200_000},
    "qwen":      {"rpm": 20, "tpm": 40_000},
    "gemini":    {"rpm": 15, "tpm": 1_000_000},
}

# Provider preference per pipeline role. The gateway walks each list in order
# and only moves on once the retry supervisor gives up on a provider.
ROLE_PROVIDERS = {
    "planner":     ["anthropic"],
    "editor":      ["anthropic"],
    "reviewer":    ["anthropic"],
    "docs":        ["anthropic"],
    "translation": ["anthropic"],
}

SUPPORTED_LANGUAGES = {
    "en": {"name": "English", "native": "English"},
    "hi": {"name": "Hindi", "native": "हिन्दी"},
    "ta": {"name": "Tamil", "native": "தமிழ்"},
    "te": {"name": "Telugu", "native": "తెలుగు"},
    "bn": {"name": "Bengali", "native": "বাংলা"},
    "mr": {"name": "Marathi", "native": "मराठी"},
    "gu": {"name": "Gujarati", "native": "ગુજરાતી"},
    "kn": {"name": "Kannada", "native": "ಕನ್ನಡ"},
    "ml": {"name": "Malayalam", "native": "മലയാളം"},
    "pa": {"name": "Punjabi", "native": "ਪੰਜਾਬੀ"},
    "or": {"name": "Odia", "native": "ଓଡ଼ିଆ"},
}
