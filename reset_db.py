import os
import shutil

from dotenv import load_dotenv

load_dotenv()

from knowledge_chat.config import StorageSettings
from knowledge_chat.database import Base, engine
from knowledge_chat.models_db import ChatAttachment, ChatMessage, ChatSession

CHAT_TABLES = [ChatMessage.__table__, ChatSession.__table__, ChatAttachment.__table__]


def reset_chat_tables():
    """Drop and recreate the transcript tables. Ingested documents and graph data are kept."""
    print(f"🗑️  Dropping chat tables from: {engine.url}")
    Base.metadata.drop_all(bind=engine, tables=CHAT_TABLES)

    print("✨  Recreating tables...")
    Base.metadata.create_all(bind=engine)

    print("✅  Chat schema reset.")


def clear_chat_uploads(upload_dir: str):
    chat_dir = os.path.join(upload_dir, "chat")
    if os.path.exists(chat_dir):
        print(f"🗑️  Clearing {chat_dir} directory...")
        shutil.rmtree(chat_dir)
        print("✅  Uploads cleared.")
    else:
        print(f"ℹ️  {chat_dir} directory not found.")
    os.makedirs(chat_dir, exist_ok=True)


if __name__ == "__main__":
    confirm = input("⚠️  WARNING: This will DELETE ALL chat sessions, messages and attachments. Continue? (y/n): ")
    if confirm.lower() == 'y':
        reset_chat_tables()
        clear_chat_uploads(StorageSettings.from_env(os.environ).upload_dir)
        print("\n🚀 Chat reset complete. Restart the backend to ensure a clean state.")
    else:
        print("❌ Action cancelled.")
