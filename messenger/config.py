import os

SUPABASE_URL = os.getenv("SUPABASE_URL", "http://localhost:54321")
SUPABASE_ANON_KEY = os.getenv("SUPABASE_ANON_KEY", "")

STORAGE_BUCKET = os.getenv("STORAGE_BUCKET", "chat-images")

SEARCH_DEBOUNCE_SECONDS = float(os.getenv("SEARCH_DEBOUNCE_SECONDS", "0.3"))
REALTIME_POLL_SECONDS = float(os.getenv("REALTIME_POLL_SECONDS", "2"))

CONVERSATION_MESSAGE_LIMIT = int(os.getenv("CONVERSATION_MESSAGE_LIMIT", "500"))
USER_SEARCH_LIMIT = int(os.getenv("USER_SEARCH_LIMIT", "20"))
READ_RECEIPT_RETRIES = int(os.getenv("READ_RECEIPT_RETRIES", "3"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
