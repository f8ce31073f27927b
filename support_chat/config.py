import os


MONGODB_URL = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
MONGODB_DB = os.getenv("MONGODB_DB", "agency")
# applied to server selection and socket reads; a timed out write is reported, not retried
MONGO_TIMEOUT_MS = int(os.getenv("MONGO_TIMEOUT_MS", "5000"))

SECRET_KEY = os.getenv("SECRET_KEY", "change-me-in-production")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))

REDIS_URL = os.getenv("REDIS_URL")
PRESENCE_TTL_SECONDS = int(os.getenv("PRESENCE_TTL_SECONDS", "60"))
DELIVERY_CHANNEL = os.getenv("DELIVERY_CHANNEL", "support-chat:delivery")

# pins the support identity instead of picking the first admin in the directory
SUPPORT_ADMIN_ID = os.getenv("SUPPORT_ADMIN_ID")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

DEFAULT_PAGE_SIZE = int(os.getenv("DEFAULT_PAGE_SIZE", "10"))
MAX_PAGE_SIZE = int(os.getenv("MAX_PAGE_SIZE", "100"))

MAX_MESSAGE_LENGTH = 1000
ADMIN_BROADCAST_GROUP = "admin-broadcast"
