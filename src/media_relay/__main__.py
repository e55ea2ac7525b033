import media_relay.web_server
from media_relay.config import RelayConfig
from media_relay.proxy_logger import STDLIB_LEVELS
import os, sys, logging

APP = "media_relay"

config = RelayConfig.from_env()

# CONFIGURE LOGGING
stdout_handler = logging.StreamHandler(sys.stdout)
handlers = [stdout_handler]

if config.log_file:
    os.makedirs(os.path.dirname(os.path.abspath(config.log_file)), exist_ok=True)
    handlers.append(logging.FileHandler(filename=config.log_file, encoding='utf-8'))

logging.basicConfig(handlers=handlers,
                    format='%(levelname)s:%(name)s:%(message)s',
                    level=STDLIB_LEVELS[config.log_level])

logger = logging.getLogger(__name__)
logger.info(f"{APP} started")

def main():
    ws = media_relay.web_server.WebServer(config)
    ws.start()

if __name__ == '__main__':
    main()
