import logging
from logging_loki import LokiHandler
from dotenv import load_dotenv
import os

class NonEmptyTagsFilter(logging.Filter):
    def filter(self, record):
        tags = getattr(record, 'tags', None)
        if tags is None:
            return True
        # Loki rejects streams with empty label values
        for key, value in tags.items():
            if value is None or value == '':
                return False
        return True

class LogUtil:
    def __init__(self):

        # Load environment variables
        load_dotenv()

        # Initialize Loki handler
        self.handler = LokiHandler(
            url=os.getenv("LOKI_URL", "http://localhost:3100/loki/api/v1/push"),
            tags={"application": "autozap_service", "environment": os.getenv("APP_ENV", "production"), "org_id": os.getenv("ORG_ID", "AutoZap")},
            version="1"
        )
        self.handler.addFilter(NonEmptyTagsFilter())
        self.logger = logging.getLogger("autozap_service")
        self.logger.setLevel(logging.DEBUG if os.getenv("DEBUG", "false").lower() == "true" else logging.INFO)
        if not self.logger.handlers:
            self.logger.addHandler(self.handler)

            # Console output for local runs
            console_handler = logging.StreamHandler()
            console_handler.setLevel(logging.INFO)
            console_formatter = logging.Formatter('%(asctime)s - %(name)s - [%(levelname)s] - %(message)s')
            console_handler.setFormatter(console_formatter)
            self.logger.addHandler(console_handler)

        logging.getLogger("pymongo").setLevel(logging.WARNING)
        logging.getLogger("motor").setLevel(logging.WARNING)
        logging.getLogger("httpx").setLevel(logging.WARNING)

    def info(self, service_name: str, message: str):
        self.logger.info(f"{message}", extra={"tags": {"service_name": service_name}})

    def error(self, service_name: str, message: str):
        self.logger.error(f"{message}", extra={"tags": {"service_name": service_name}})

    def warning(self, service_name: str, message: str):
        self.logger.warning(f"{message}", extra={"tags": {"service_name": service_name}})

    def debug(self, service_name: str, message: str):
        self.logger.debug(f"{message}", extra={"tags": {"service_name": service_name}})
