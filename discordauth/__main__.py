"""Package entry point for `python -m discordauth`."""

import signal

from discordauth.config.env import DEBUG, FLASK_HOST, FLASK_PORT
from discordauth.main import build_services, create_app

if __name__ == "__main__":
    services = build_services()
    app = create_app(services)
    services.start()
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, lambda _signum, _frame: services.reload())
    try:
        app.run(host=FLASK_HOST, port=FLASK_PORT, debug=DEBUG, use_reloader=False)
    finally:
        services.stop()
