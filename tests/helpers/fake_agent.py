"""Stand-in for the agent CLI, driven by FAKE_AGENT_* environment variables.

Reads the prompt from stdin, optionally logs argv + prompt to
FAKE_AGENT_LOG, then behaves according to FAKE_AGENT_MODE:

    ok         print init / assistant / result records (default)
    fail       write to stderr and exit 3
    ratelimit  report a rate limit on stderr and exit 1
    malformed  print a line that is not JSON
    empty      exit 0 without output
    sleep      sleep FAKE_AGENT_SLEEP seconds, then behave like ok
    restart    first run (no FAKE_AGENT_MARKER file) creates the marker and
               hangs; later runs behave like ok
"""

import json
import os
import sys
import time
from pathlib import Path


def main() -> int:
    prompt = sys.stdin.read()
    mode = os.environ.get("FAKE_AGENT_MODE", "ok")

    log_path = os.environ.get("FAKE_AGENT_LOG")
    if log_path:
        with open(log_path, "a", encoding="utf-8") as f:
            f.write(json.dumps({"argv": sys.argv[1:], "prompt": prompt}) + "\n")

    if mode == "restart":
        marker = Path(os.environ["FAKE_AGENT_MARKER"])
        if not marker.exists():
            marker.write_text("started", encoding="utf-8")
            time.sleep(60)
        mode = "ok"
    if mode == "sleep":
        time.sleep(float(os.environ.get("FAKE_AGENT_SLEEP", "60")))
        mode = "ok"

    if mode == "fail":
        sys.stderr.write("boom: something broke\n")
        return 3
    if mode == "ratelimit":
        sys.stderr.write("Error: rate limit exceeded, try again later\n")
        return 1
    if mode == "malformed":
        print("this is not json")
        return 0
    if mode == "empty":
        return 0

    session = os.environ.get("FAKE_AGENT_SESSION", "sess-fake")
    result = os.environ.get("FAKE_AGENT_RESULT", "done")
    records = [
        {"type": "system", "subtype": "init", "session_id": session},
        {"type": "assistant", "message": {"content": [{"type": "text", "text": "working"}]}, "session_id": session},
        {"type": "result", "result": result, "is_error": False, "session_id": session},
    ]
    for record in records:
        print(json.dumps(record))
    sys.stdout.flush()
    return 0


if __name__ == "__main__":
    sys.exit(main())
