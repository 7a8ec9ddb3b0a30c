import re


def safe_name(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9-]", "-", str(name))[:63].strip("-")


def stack_name(project: str, env: str) -> str:
    # safe_name never emits ".", so the project and env parts stay separable.
    return f"{safe_name(project)}.{safe_name(env)}"


def bucket_name(desired: str) -> str:
    # S3 rules: 3-63 chars, lowercase letters, digits, dots and hyphens,
    # starting and ending with a letter or digit.
    raw = re.sub(r"[^a-z0-9.-]", "-", str(desired).lower()).strip(".-")
    if len(raw) < 3:
        raw = f"{raw}-s3" if raw else "s3-bucket"
    return raw[:63].rstrip(".-")
