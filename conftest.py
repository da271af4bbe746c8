import os
import sys
from pathlib import Path

# Default env for billing settings in tests.
os.environ.setdefault("BILLING_STORE", "memory")
os.environ.setdefault("SUPABASE_URL", "https://example.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "service-role-token")
os.environ.setdefault("ZARINPAL_MERCHANT_ID", "0b0a4f2e-6c3d-4a8b-9e21-5f7c8d9a1b2c")
os.environ.setdefault("LOG_LEVEL", "WARNING")

# Ensure the repo root is on sys.path so "import recurring_billing" works without an install.
REPO_ROOT = Path(__file__).resolve().parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))
