"""
Simple Bridge Starter
Just run: python -m pearid.start
"""

import subprocess
import sys

from pearid.config import config


def main() -> int:
    print("=" * 70)
    print("Starting PearID Verification Bridge...")
    print("=" * 70)
    print()

    # CREATE_NEW_PROCESS_GROUP flag for Windows to allow Ctrl+C
    creationflags = subprocess.CREATE_NEW_PROCESS_GROUP if sys.platform == 'win32' else 0

    process = subprocess.Popen([
        sys.executable, "-m", "uvicorn",
        "pearid.main:app",
        "--host", config.API_HOST,
        "--port", str(config.API_PORT),
        "--log-level", config.API_LOG_LEVEL,
        # Single process: the mint workers own the signing account's nonces
        "--workers", "1",
    ], creationflags=creationflags)

    try:
        return process.wait()
    except KeyboardInterrupt:
        print("\n\nStopping bridge...")
        process.terminate()
        try:
            process.wait(timeout=10)
        except subprocess.TimeoutExpired:
            process.kill()
        print("Bridge stopped.")
        return 0


if __name__ == "__main__":
    sys.exit(main())
