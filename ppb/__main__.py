import logging
import os

import uvicorn

from ppb.asgi_app import DEBUG_MODE, LOG_LEVEL, log_level_map


def main():
    uvicorn.run(
        "ppb.asgi_app:create_app",
        factory=True,
        host=os.getenv('PPB_LISTEN_HOST', '0.0.0.0'),
        port=int(os.getenv('PPB_LISTEN_PORT', '8080')),
        log_level=logging.getLevelName(log_level_map.get(LOG_LEVEL, logging.INFO)).lower(),
        access_log=DEBUG_MODE,
    )


if __name__ == "__main__":
    main()
