"""Story Orchestrator: dev launcher. Serves the HTTP API with reload."""

import argparse
import os
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "13015"))


def main():
    parser = argparse.ArgumentParser(description="Story Orchestrator dev launcher")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Data storage directory (default: ./data)")
    parser.add_argument("--demo", action="store_true",
                        help="Write the demo story into the data directory")
    args = parser.parse_args()

    data_dir = (args.data_dir or ROOT / "data").resolve()
    os.environ["STORY_DATA_DIR"] = str(data_dir)

    if args.demo:
        from story_orchestrator.demo import create_demo_data
        from story_orchestrator.storage import Storage
        slug = create_demo_data(Storage(data_dir))
        print(f"Demo story written as '{slug}'")

    print(f"Starting API on http://localhost:{PORT} ...")
    uvicorn.run(
        "story_orchestrator.app:create_app",
        factory=True,
        host=HOST,
        port=PORT,
        reload=True,
    )


if __name__ == "__main__":
    main()
