# extensions.py
from flask_sqlalchemy import SQLAlchemy
import os
from redis import Redis
from rq import Queue
from dotenv import load_dotenv

db = SQLAlchemy()

load_dotenv()

# from_url 不会立即建立连接，worker / enqueue 时才真正连 redis
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
redis_conn = Redis.from_url(REDIS_URL)
sync_queue = Queue("sync_jobs", connection=redis_conn)
