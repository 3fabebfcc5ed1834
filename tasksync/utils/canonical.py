import orjson


def canonical_bytes(d: dict) -> bytes:
    # sort keys & remove whitespace (orjson is deterministic for the same structure)
    return orjson.dumps(d, option=orjson.OPT_SORT_KEYS)


def dumps(d: dict) -> str:
    return orjson.dumps(d).decode("utf-8")


def loads(raw: str | bytes):
    return orjson.loads(raw)
