import os

# Database
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "agri_backoffice")

# Security settings
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 8))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", 12))

# Uploads
UPLOAD_DIR = os.getenv("UPLOAD_DIR", "uploads")
MAX_FILE_UPLOAD = int(os.getenv("MAX_FILE_UPLOAD", 5 * 1024 * 1024))

# Logging
LOG_DIR = os.getenv("LOG_DIR")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Business defaults
LOW_STOCK_THRESHOLD = int(os.getenv("LOW_STOCK_THRESHOLD", 10))
DEFAULT_PAGE_LIMIT = int(os.getenv("DEFAULT_PAGE_LIMIT", 10))
MAX_PAGE_LIMIT = int(os.getenv("MAX_PAGE_LIMIT", 100))
INVOICE_DUE_DAYS = int(os.getenv("INVOICE_DUE_DAYS", 30))
