from app import create_app
from scheduler import start_scheduler

app = create_app()
start_scheduler(app)
app.extensions['airdrop_sync'].start_automatic_monitoring()
