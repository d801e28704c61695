"""Configuration management for the agent network negotiation service."""
import os
import logging
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# API Keys
GROQ_API_KEY = os.getenv("GROQ_API_KEY")
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_KEY")

# Proxy chat backend (SecondMe)
SECONDME_BASE_URL = os.getenv("SECONDME_BASE_URL", "https://app.mindos.com/gate/lab")
SECONDME_CLIENT_ID = os.getenv("SECONDME_CLIENT_ID")
SECONDME_CLIENT_SECRET = os.getenv("SECONDME_CLIENT_SECRET")

# Server Configuration
PORT = int(os.getenv("PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "text")  # "text" or "json"

# CORS Configuration
CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:3001"
).split(",")

# Model Configuration
COMPLETION_MODEL = os.getenv("COMPLETION_MODEL", "llama-3.3-70b-versatile")

# Timeouts (seconds)
COMPLETION_TIMEOUT_SECONDS = float(os.getenv("COMPLETION_TIMEOUT_SECONDS", "60"))
CHAT_TIMEOUT_SECONDS = float(os.getenv("CHAT_TIMEOUT_SECONDS", "90"))
TOKEN_REFRESH_WINDOW_SECONDS = int(os.getenv("TOKEN_REFRESH_WINDOW_SECONDS", "300"))

# Negotiation Configuration
MAX_ROUNDS = int(os.getenv("MAX_ROUNDS", "5"))
PEER_POOL_LIMIT = int(os.getenv("PEER_POOL_LIMIT", "10"))

# Logging Configuration
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
