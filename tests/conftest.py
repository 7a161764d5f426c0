import os

# The app reads these at import time.
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_gateway.db")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("BTCPAY_MODE", "test")
os.environ.setdefault("BTCPAY_SERVER_TESTNET", "btcpay.test.example")
os.environ.setdefault("BTCPAY_API_KEY_TESTNET", "test-api-key")
os.environ.setdefault("STOREFRONT_URL", "https://shop.example")
