"""
Flask application factory and server entry-point.
"""

import os
import sys
import traceback

from flask import Flask
from flask_cors import CORS

from clinicflow.assistant import ClinicalAssistant
from clinicflow.config import APP_CONFIG, TOKEN_EXPIRY_HOURS
from clinicflow.database import init_store
from clinicflow.llm import init_llm
from clinicflow.api.routes import register_routes


def create_app(store=None, assistant=None):
    """Build and return a fully configured Flask application."""
    app = Flask(__name__)
    CORS(app)

    # ── Initialise shared resources ──────────────────────────────────
    try:
        if store is None:
            print("[init] Initializing storage backend...")
            store = init_store()

        if assistant is None:
            print("[init] Initializing clinical assistant...")
            assistant = ClinicalAssistant(llm=init_llm())

        print(f"[init] ✓ API server ready (backend={store.name})")
    except Exception as e:
        print(f"[FATAL] Failed to initialize: {e}", file=sys.stderr)
        traceback.print_exc()
        sys.exit(1)

    app.config["CLINIC_STORE"] = store

    # ── Register routes ──────────────────────────────────────────────
    register_routes(app, store, assistant)

    return app


def main():
    """Run the development server."""
    print("=" * 60)
    print(f"Diabetes Clinic – {APP_CONFIG['branch_name']} – REST API Server")
    print("=" * 60)

    app = create_app()

    host = os.getenv("API_HOST", "0.0.0.0")
    port = int(os.getenv("API_PORT", "8000"))
    debug = os.getenv("FLASK_ENV") == "development"

    print(f"\n[server] Starting Flask API on {host}:{port}")
    print(f"[server] Debug mode: {debug}")
    print(f"[server] Session expiry: {TOKEN_EXPIRY_HOURS} hours")
    print("\nAPI Endpoints:")
    print(f"  - POST http://{host}:{port}/api/auth/login")
    print(f"  - GET  http://{host}:{port}/api/session")
    print(f"  - POST http://{host}:{port}/api/patients")
    print(f"  - POST http://{host}:{port}/api/chart/submit")
    print(f"  - GET  http://{host}:{port}/api/dispensary")
    print(f"  - GET  http://{host}:{port}/api/archive")
    print(f"  - POST http://{host}:{port}/api/auth/logout")
    print(f"  - GET  http://{host}:{port}/health")
    print("\n" + "=" * 60)

    try:
        app.run(host=host, port=port, debug=debug, threaded=True)
    finally:
        app.config["CLINIC_STORE"].close()


if __name__ == "__main__":
    main()
