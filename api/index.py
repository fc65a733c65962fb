from mangum import Mangum

from merchant_ledger.api import create_app
from merchant_ledger.config import Settings, configure_logging

settings = Settings.from_env()
configure_logging(settings.log_level)

app = create_app(settings, root_path="/api")

# the warm container reuses the plugin pool and engine across invocations
handler = Mangum(app, lifespan="off")
