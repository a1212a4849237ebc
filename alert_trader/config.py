import os
from dotenv import load_dotenv

load_dotenv()

class Settings:
    APP_NAME = "Alert Trader"
    ENV = os.getenv("ENV", "development")
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./alert_trader.db")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Exchange connectivity
    EXCHANGE_MAINNET_URL = os.getenv("EXCHANGE_MAINNET_URL", "https://api.bytick.com")
    EXCHANGE_TESTNET_URL = os.getenv("EXCHANGE_TESTNET_URL", "https://api-testnet.bybit.com")
    EXCHANGE_CATEGORY = os.getenv("EXCHANGE_CATEGORY", "linear")
    EXCHANGE_RECV_WINDOW = os.getenv("EXCHANGE_RECV_WINDOW", "5000")
    EXCHANGE_HTTP_TIMEOUT = float(os.getenv("EXCHANGE_HTTP_TIMEOUT", "10"))

    # Closed-PnL reconciliation
    RECONCILE_MAX_ATTEMPTS = int(os.getenv("RECONCILE_MAX_ATTEMPTS", "3"))
    RECONCILE_BACKOFF_BASE = float(os.getenv("RECONCILE_BACKOFF_BASE", "1.0"))
    RECONCILE_BACKOFF_CAP = float(os.getenv("RECONCILE_BACKOFF_CAP", "8.0"))
    RECONCILE_BACKOFF_JITTER = float(os.getenv("RECONCILE_BACKOFF_JITTER", "1.0"))
    RECONCILE_FEE_RATE = float(os.getenv("RECONCILE_FEE_RATE", "0.0006"))

    # Test-mode simulation and analytics defaults
    SIMULATED_FEE_RATE = float(os.getenv("SIMULATED_FEE_RATE", "0.001"))
    DEFAULT_MAX_RISK = float(os.getenv("DEFAULT_MAX_RISK", "10"))

    LOG_RETENTION_DAYS = int(os.getenv("LOG_RETENTION_DAYS", "7"))
    WORKER_THREADS = int(os.getenv("WORKER_THREADS", "4"))

settings = Settings()
