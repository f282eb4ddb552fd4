#!/usr/bin/env python3
"""
Run the control plane under uvicorn.

    python mymcp/start_backend.py            # 0.0.0.0:8000
    MYMCP_PORT=9000 python mymcp/start_backend.py
"""
import os
import sys

# Make `mymcp` importable when launched as a script
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def main() -> int:
    import uvicorn

    host = os.getenv("MYMCP_HOST", "0.0.0.0")
    port = int(os.getenv("MYMCP_PORT", "8000"))
    print(f"[mymcp] control plane on http://{host}:{port} (CTRL+C to stop)")
    try:
        uvicorn.run("mymcp.main:app", host=host, port=port, log_level="info")
    except KeyboardInterrupt:
        print("\n[mymcp] stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
