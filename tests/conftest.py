import os
import tempfile

# ログファイルやホームディレクトリを実環境に作らない
os.environ["TSK_LOG_FILE"] = "0"
os.environ.setdefault("TSK_HOME_DIR", tempfile.mkdtemp(prefix="tsk-test-home-"))
