from chatrelay.app import create_app
from chatrelay.settings import Settings
from dotenv import load_dotenv
import logging

load_dotenv()

settings = Settings.from_env()

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

app = create_app(settings)
