from mangum import Mangum

from referrals.api import create_app
from referrals.logging_config import configure_logging

configure_logging()

app = create_app()

handler = Mangum(app)
