from __future__ import annotations
import logging
import os
from salonpass import create_app, start_scheduler

def main() -> None:
    flask_app = create_app()
    logging.basicConfig(
        level=flask_app.config["LOG_LEVEL"],
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    # show what routes are actually mounted
    print("\n=== URL MAP ===")
    for r in sorted(flask_app.url_map.iter_rules(), key=lambda x: x.rule):
        print(r)
    print("===============\n")

    debug_enabled = os.environ.get("FLASK_DEBUG", "0") in {"1", "true", "True"}
    # The reloader would start a second scheduler in the child process
    if flask_app.config["SCHEDULER_ENABLED"] and (not debug_enabled or os.environ.get("WERKZEUG_RUN_MAIN") == "true"):
        start_scheduler(flask_app)

    flask_app.run(host="0.0.0.0", port=int(os.environ.get("PORT", 5000)), debug=debug_enabled)

if __name__ == "__main__":
    main()
