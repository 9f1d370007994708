from buying_signals.services.cache import TTLCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_entries_expire_after_ttl() -> None:
    clock = FakeClock()
    cache = TTLCache(60, clock=clock)
    cache.set("call-signals", "006A", "value")

    clock.now = 59.9
    assert cache.get("call-signals", "006A") == "value"

    clock.now = 60.0
    assert cache.get("call-signals", "006A") is None


def test_namespaces_do_not_collide() -> None:
    cache = TTLCache(clock=FakeClock())
    cache.set("call-signals", "001A", "deal")
    cache.set("news-signals", "001A", "news")

    assert cache.get("call-signals", "001A") == "deal"
    assert cache.get("news-signals", "001A") == "news"


def test_per_entry_ttl_and_invalidate() -> None:
    clock = FakeClock()
    cache = TTLCache(3600, clock=clock)
    cache.set("news-signals", "001A", "short", ttl_seconds=5)
    cache.set("news-signals", "001B", "long")

    clock.now = 10
    assert cache.get("news-signals", "001A") is None
    assert cache.get("news-signals", "001B") == "long"

    cache.invalidate("news-signals", "001B")
    assert cache.get("news-signals", "001B") is None
