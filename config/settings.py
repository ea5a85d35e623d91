import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    # AI
    ANTHROPIC_API_KEY: str = os.getenv("ANTHROPIC_API_KEY", "")
    OPENAI_API_KEY: str = os.getenv("OPENAI_API_KEY", "")
    GOOGLE_API_KEY: str = os.getenv("GOOGLE_API_KEY", "")
    GROQ_API_KEY: str = os.getenv("GROQ_API_KEY", "")
    AI_PROVIDER: str = os.getenv("AI_PROVIDER", "gemini")

    # Storage
    GHOST_DB_PATH: str = os.getenv(
        "GHOST_DB_PATH",
        os.path.join(os.path.dirname(__file__), "..", "data", "ghostcoach.db"),
    )

    # Market data
    GHOST_SYMBOL: str = os.getenv("GHOST_SYMBOL", "BTCUSDT")
    GHOST_INTERVAL: str = os.getenv("GHOST_INTERVAL", "1m")
    BINANCE_REST_URL: str = os.getenv("BINANCE_REST_URL", "https://api.binance.com/api/v3/klines")
    BINANCE_WS_URL: str = os.getenv("BINANCE_WS_URL", "wss://stream.binance.com:9443/ws")

    # Coach
    INTERVENTION_COUNTDOWN_SECONDS: int = int(os.getenv("INTERVENTION_COUNTDOWN_SECONDS", "10"))

    def validate(self):
        errors = []
        keys = {
            "groq": self.GROQ_API_KEY,
            "gemini": self.GOOGLE_API_KEY,
            "anthropic": self.ANTHROPIC_API_KEY,
            "openai": self.OPENAI_API_KEY,
        }
        if self.AI_PROVIDER not in keys:
            errors.append(f"Unknown AI_PROVIDER: {self.AI_PROVIDER}")
        elif not keys[self.AI_PROVIDER]:
            errors.append(f"API key for AI provider '{self.AI_PROVIDER}' is not set")
        if self.GHOST_INTERVAL not in ("1m", "5m", "15m", "1h"):
            errors.append(f"Unsupported GHOST_INTERVAL: {self.GHOST_INTERVAL}")
        if self.INTERVENTION_COUNTDOWN_SECONDS < 0:
            errors.append("INTERVENTION_COUNTDOWN_SECONDS must be non-negative")
        return errors


settings = Settings()
