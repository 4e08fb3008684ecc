"""S3 Mirror: continuous one-way backup of a directory tree to S3.

Watches a local folder, waits for each changed file to settle, and
uploads it to a key built from the configured prefix and its path.
"""

__version__ = "1.0.0"
__app_name__ = "S3 Mirror"
