import os
import sys
import tempfile

# Must run before config is imported anywhere
_DB_DIR = tempfile.mkdtemp(prefix="trivia-party-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["CONTENT_PROVIDER"] = "mock"
os.environ["QUESTION_TIME_SEC"] = "10"
os.environ["REVEAL_TIME_SEC"] = "0.05"
os.environ["STARTING_DELAY_SEC"] = "0.05"
os.environ["TOPIC_CHOSEN_DELAY_SEC"] = "0.05"
os.environ["ROUND_OVER_DELAY_SEC"] = "0.05"

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import db  # noqa: E402

db.init_db(db.engine)
