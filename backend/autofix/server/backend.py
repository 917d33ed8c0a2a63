from autofix import config
from autofix.services.change_hub import ChangeHub
from autofix.services.object_store import ObjectStore
from autofix.services.table_store import TableStore

table_store = TableStore(db_path=config.REMOTE_DB_PATH)
change_hub = ChangeHub()
object_store = ObjectStore(base_dir=config.STORAGE_DIR, public_base_url=config.PUBLIC_BASE_URL)
