"""Application entry point for the Dog Universe boarding API."""

import logging
import os

from doguniverse.webapp import create_app

logging.basicConfig(
    level=os.environ.get("DOGUNIVERSE_LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app()


if __name__ == "__main__":
    app.run(debug=True)
