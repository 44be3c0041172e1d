from dotenv import load_dotenv
import os

# Utils
from autozap.utils.log_utils import LogUtil

"""
Utility class for environment variables
"""
class EnvironmentUtils:
    def __init__(self, log_util: LogUtil):

        # Load environment variables
        load_dotenv()

        # Initialize logger
        self.log_util = log_util

        # Environment variables
        self.env_variables = {
            "APP_ENV": os.getenv("APP_ENV", "production"),
            "HOST": os.getenv("HOST", "0.0.0.0"),
            "PORT": int(os.getenv("PORT", "8020")),
            "ORG_ID": os.getenv("ORG_ID", "AutoZap"),
            "LOKI_URL": os.getenv("LOKI_URL", "http://localhost:3100/loki/api/v1/push"),
            "MONGO_URI": os.getenv("MONGO_URI", "mongodb://localhost:27017"),
            "MONGO_DB_NAME": os.getenv("MONGO_DB_NAME", "autozap"),
            "OPENAI_API_KEY": os.getenv("OPENAI_API_KEY", ""),
            "OPENAI_BASE_URL": os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1"),
            "OPENAI_CHAT_MODEL": os.getenv("OPENAI_CHAT_MODEL", "gpt-4o-mini"),
            "AI_CACHE_TTL_SECONDS": int(os.getenv("AI_CACHE_TTL_SECONDS", "3600")),
            "WHATSAPP_API_URL": os.getenv("WHATSAPP_API_URL", "https://graph.facebook.com/v18.0"),
            "WAIT_CHECK_INTERVAL_SECONDS": int(os.getenv("WAIT_CHECK_INTERVAL_SECONDS", "5")),
            "MAX_WORKFLOW_ITERATIONS": int(os.getenv("MAX_WORKFLOW_ITERATIONS", "100")),
        }

    def get_env_variable(self, variable_name: str) -> str | int:
        if variable_name not in self.env_variables:
            self.log_util.error(service_name="EnvironmentUtils", message=f"Environment variable {variable_name} not found")
            raise ValueError(f"Environment variable {variable_name} not found")
        return self.env_variables[variable_name]
