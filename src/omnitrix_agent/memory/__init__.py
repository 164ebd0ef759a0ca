from omnitrix_agent.memory.file_changes import FileChangeTracker
from omnitrix_agent.memory.session_manager import SessionManager
from omnitrix_agent.memory.store import MemoryStore

__all__ = [
    "FileChangeTracker",
    "MemoryStore",
    "SessionManager",
]
