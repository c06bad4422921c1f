from conductor.state.git_notes import GitNotesStore

__all__ = ["GitNotesStore"]
