#!/usr/bin/env python3
"""
AssetFlow Workflow Engine Entry Point

Starts the FastAPI server (port 8095 unless ASSETFLOW_API_PORT says otherwise).
"""

import sys

from asset_workflows.api import run_server
from asset_workflows.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting AssetFlow workflow engine...")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down AssetFlow workflow engine...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
