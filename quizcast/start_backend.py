#!/usr/bin/env python3
"""
Backend startup wrapper for QuizCast.
"""
import os
import sys

import uvicorn


def main() -> int:
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    print(f"[Backend] Starting QuizCast backend on http://{host}:{port}")
    try:
        uvicorn.run(
            "quizcast.main:app",
            host=host,
            port=port,
            reload=False,
            log_level="info",
            access_log=True,
        )
    except KeyboardInterrupt:
        print("\n[Backend] Shutting down...")
    return 0


if __name__ == "__main__":
    sys.exit(main())
