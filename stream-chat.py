from chatrelay.events import iter_events
from dotenv import load_dotenv
import requests
import os
import sys

# load environment variables
load_dotenv()

SERVICE_URL = os.environ.get("LLM_SERVICE_URL", "http://127.0.0.1:8000")

def main(user_id: str, message: str, session_id: str = "null"):
    response = requests.post(
        f"{SERVICE_URL}/chat",
        data={"userId": user_id, "type": "text", "message": message, "sessionId": session_id},
        stream=True,
        timeout=(10, None),
    )
    if not response.ok:
        sys.exit(f"{response.status_code}: {response.text}")

    chunks = response.iter_content(chunk_size=None, decode_unicode=True)
    for event in iter_events(chunks):
        payload = event.json()
        if "token" in payload:
            print(payload["token"], end="", flush=True)
        elif "newTitle" in payload and not payload.get("done"):
            print(f"\n[title] {payload['newTitle']}")
        elif "error" in payload:
            print(f"\n[error] {payload['error']}")
        elif payload.get("done"):
            print(f"\n[done] session {payload['sessionId']}")

if __name__ == "__main__":
    if len(sys.argv) < 3:
        sys.exit("usage: stream-chat.py USER_ID MESSAGE [SESSION_ID]")
    main(*sys.argv[1:4])
