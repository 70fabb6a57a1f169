import os
import sys
from pathlib import Path

# Default env for billing settings in tests.
os.environ.setdefault("SUPABASE_URL", "https://example.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-service-role-key")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_vendorbilling")
os.environ.setdefault("EMAIL_FROM", "billing@example.com")
os.environ.setdefault("VENDOR_BILLING_ENV", "test")
os.environ.setdefault("WORKER_HEARTBEAT_ENABLED", "false")

# Ensure the repository root is on sys.path so "import vendor_billing" works without an install.
REPO_ROOT = Path(__file__).resolve().parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))
