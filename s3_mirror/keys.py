"""Local path to remote object key mapping."""


def remote_key(local_path: str, prefix: str) -> str:
    """Return the object key for *local_path* under *prefix*.

    The prefix and the path are concatenated as-is.  Watcher paths are
    absolute, so ``remote_key("/data/a.txt", "backup")`` yields
    ``"backup/data/a.txt"``; no separator is inserted for relative paths.
    """
    return prefix + local_path
