#!/usr/bin/env python3
"""
capi-relay API Startup Script

Runs the ingestion API with auto-reload for local development. Deployed
instances run `uvicorn capi_relay.main:app` directly.
"""

import os
import sys

import uvicorn
from dotenv import load_dotenv

# Without these the storefront, webhook and delivery routes all fail closed
REQUIRED_ENV = (
    "DATABASE_URL",
    "SERVICE_TENANT_ID",
    "SHOPIFY_WEBHOOK_SECRET",
    "INTERNAL_ADMIN_TOKEN",
)


def main():
    """Start the capi-relay API server."""
    load_dotenv(override=False)

    missing = [name for name in REQUIRED_ENV if not os.getenv(name)]
    if missing:
        print(f"WARNING: missing environment variables: {', '.join(missing)}")
        print("   Set them in .env or export them before starting.")
        print("")

    port = int(os.getenv("PORT", "8000"))
    print(f"Starting capi-relay API on port {port} (docs at http://localhost:{port}/docs)")

    try:
        uvicorn.run(
            "capi_relay.main:app",
            host="0.0.0.0",
            port=port,
            reload=True,
            reload_dirs=["capi_relay"],
            log_level="info"
        )
    except KeyboardInterrupt:
        print("\nShutting down capi-relay API server...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
