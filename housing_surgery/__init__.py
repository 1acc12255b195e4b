"""Housing status and surgical outcomes analysis pipeline."""
