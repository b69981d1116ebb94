import os

from dotenv import load_dotenv

# .env is only present for local development
load_dotenv()


def _get_list(name: str, default: str) -> list[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


class Settings:
    def __init__(self):
        # Oracle / external ledger
        self.ORACLE_PRIVATE_KEY: str = os.getenv("ORACLE_PRIVATE_KEY", "")
        self.LEDGER_RPC_URL: str = os.getenv("LEDGER_RPC_URL", "https://alfajores-forno.celo-testnet.org")
        self.TOKEN_CONTRACT_ADDRESS: str = os.getenv("TOKEN_CONTRACT_ADDRESS", "")
        self.TOKEN_DECIMALS: int = int(os.getenv("TOKEN_DECIMALS", "18"))
        self.ORACLE_CONFIRMATIONS: int = int(os.getenv("ORACLE_CONFIRMATIONS", "1"))
        self.ORACLE_RECEIPT_TIMEOUT: float = float(os.getenv("ORACLE_RECEIPT_TIMEOUT", "120"))
        self.ORACLE_MAX_ATTEMPTS: int = int(os.getenv("ORACLE_MAX_ATTEMPTS", "3"))
        self.ORACLE_RETRY_BACKOFF: float = float(os.getenv("ORACLE_RETRY_BACKOFF", "2.0"))

        # Reconciliation, 0 disables the periodic run
        self.RECONCILE_INTERVAL_SECONDS: float = float(os.getenv("RECONCILE_INTERVAL_SECONDS", "0"))

        # Realtime
        self.REALTIME_HEARTBEAT_SECONDS: float = float(os.getenv("REALTIME_HEARTBEAT_SECONDS", "30"))

        # Cache TTLs (seconds)
        self.CACHE_TTL_SHORT: float = float(os.getenv("CACHE_TTL_SHORT", "30"))
        self.CACHE_TTL_MEDIUM: float = float(os.getenv("CACHE_TTL_MEDIUM", "60"))

        self.CORS_ORIGINS: list[str] = _get_list("CORS_ORIGINS", "http://localhost:3000")
        self.LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    @property
    def oracle_configured(self) -> bool:
        return bool(self.ORACLE_PRIVATE_KEY and self.TOKEN_CONTRACT_ADDRESS and self.LEDGER_RPC_URL)


settings = Settings()
