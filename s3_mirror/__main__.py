"""Entry point for S3 Mirror.

Usage:
    python -m s3_mirror <bucket_name> <local_directory> <s3_prefix>
"""

import sys


def main(argv: list[str] | None = None) -> None:
    """Validate arguments and run the mirror in the foreground."""
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 3:
        prog = "s3-mirror"
        print(f"Usage: {prog} <bucket_name> <local_directory> <s3_prefix>", file=sys.stderr)
        sys.exit(1)

    from s3_mirror.service import run_foreground

    sys.exit(run_foreground(*args))


if __name__ == "__main__":
    main()
