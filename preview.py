from chatrelay.models import flatten_content, parse_content
from chatrelay.store import SessionStore, make_engine
from dotenv import load_dotenv
import os
import sys

load_dotenv()

DATABASE_URL = os.environ["DATABASE_URL"]

store = SessionStore(make_engine(DATABASE_URL))

def main(user_id: str):
    for chat_session in store.get_sessions_for_user(user_id):
        print(f"#{chat_session.id} {chat_session.title} (updated {chat_session.updated_at})")
        for record in store.get_messages(chat_session.id):
            text = flatten_content(parse_content(record.content, record.type))
            print(f"  [{record.created_at}] {record.role}: {text}")
            print()
        print("------------")

if __name__ == "__main__":
    if len(sys.argv) != 2:
        sys.exit("usage: preview.py USER_ID")
    main(sys.argv[1])
