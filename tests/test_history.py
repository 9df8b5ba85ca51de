from quotawatch.history import DEDUP_MS, MAX_ENTRIES, HistoryStore
from quotawatch.state import JsonStateFile

RESET_A = "2026-01-01T05:00:00.000Z"
RESET_B = "2026-01-01T10:00:00.000Z"


class TestHistoryStoreRecord:
    def test_first_record_creates_series(self, history_state, clock) -> "None":
        store = HistoryStore(history_state, clock=clock)
        assert store.record("claude", "Session", 10.0, RESET_A) is True

        series = store.read("claude", "Session")
        assert len(series) == 1
        assert series[0].percent == 10.0
        assert series[0].timestamp == clock.now_ms
        assert series[0].resets_at == RESET_A

    def test_record_within_dedup_guard_is_dropped(self, history_state, clock) -> "None":
        store = HistoryStore(history_state, clock=clock)
        store.record("claude", "Session", 10.0, RESET_A)

        clock.advance(DEDUP_MS - 1)
        assert store.record("claude", "Session", 12.0, RESET_A) is False

        series = store.read("claude", "Session")
        assert len(series) == 1
        assert series[0].percent == 10.0

    def test_record_after_dedup_guard_is_appended(self, history_state, clock) -> "None":
        store = HistoryStore(history_state, clock=clock)
        store.record("claude", "Session", 10.0, RESET_A)

        clock.advance(DEDUP_MS)
        assert store.record("claude", "Session", 12.0, RESET_A) is True
        assert [s.percent for s in store.read("claude", "Session")] == [10.0, 12.0]

    def test_rollover_truncates_series_to_new_snapshot(
        self, history_state, clock
    ) -> "None":
        store = HistoryStore(history_state, clock=clock)
        for percent in (10.0, 20.0, 30.0):
            store.record("claude", "Session", percent, RESET_A)
            clock.advance(DEDUP_MS)

        store.record("claude", "Session", 1.0, RESET_B)

        series = store.read("claude", "Session")
        assert len(series) == 1
        assert series[0].percent == 1.0
        assert series[0].resets_at == RESET_B

    def test_rollover_bypasses_dedup_guard(self, history_state, clock) -> "None":
        store = HistoryStore(history_state, clock=clock)
        store.record("claude", "Session", 95.0, RESET_A)

        clock.advance(1000)
        assert store.record("claude", "Session", 0.0, RESET_B) is True
        assert [s.percent for s in store.read("claude", "Session")] == [0.0]

    def test_missing_resets_at_does_not_roll_over(self, history_state, clock) -> "None":
        store = HistoryStore(history_state, clock=clock)
        store.record("codex", "Weekly", 10.0, RESET_A)
        clock.advance(DEDUP_MS)
        store.record("codex", "Weekly", 11.0)

        assert len(store.read("codex", "Weekly")) == 2

    def test_retention_caps_series_dropping_oldest(self, history_state, clock) -> "None":
        store = HistoryStore(history_state, clock=clock)
        total = MAX_ENTRIES + 12
        first_timestamp = clock.now_ms
        for i in range(total):
            store.record("kimi", "Session", float(i % 100), RESET_A)
            clock.advance(DEDUP_MS)

        series = store.read("kimi", "Session")
        assert len(series) == MAX_ENTRIES
        # the 12 oldest snapshots were dropped
        assert series[0].timestamp == first_timestamp + 12 * DEDUP_MS
        assert series[-1].timestamp == first_timestamp + (total - 1) * DEDUP_MS

    def test_series_are_independent(self, history_state, clock) -> "None":
        store = HistoryStore(history_state, clock=clock)
        store.record("claude", "Session", 10.0, RESET_A)
        store.record("claude", "Weekly", 20.0, RESET_B)
        store.record("codex", "Session", 30.0, RESET_A)

        assert [s.percent for s in store.read("claude", "Session")] == [10.0]
        assert [s.percent for s in store.read("claude", "Weekly")] == [20.0]
        assert [s.percent for s in store.read("codex", "Session")] == [30.0]


class TestHistoryStorePersistence:
    def test_survives_new_store_instance(self, history_state, clock) -> "None":
        HistoryStore(history_state, clock=clock).record("claude", "Session", 42.0)

        reopened = HistoryStore(JsonStateFile(history_state.path), clock=clock)
        assert [s.percent for s in reopened.read("claude", "Session")] == [42.0]

    def test_read_unknown_series_is_empty(self, history_state) -> "None":
        assert HistoryStore(history_state).read("claude", "Session") == []

    def test_corrupt_file_reads_as_empty(self, history_state, clock) -> "None":
        history_state.path.parent.mkdir(parents=True)
        history_state.path.write_text("{not json")

        store = HistoryStore(history_state, clock=clock)
        assert store.read("claude", "Session") == []
        assert store.record("claude", "Session", 5.0) is True
        assert len(store.read("claude", "Session")) == 1

    def test_write_failure_is_swallowed(self, tmp_path, clock) -> "None":
        # the state path's parent is a file, so the directory can't be created
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        store = HistoryStore(JsonStateFile(blocker / "history.json"), clock=clock)

        store.record("claude", "Session", 5.0)
        assert store.read("claude", "Session") == []
