from uke_ingest.writers.dedupe import chunked, dedupe_by


class TestDedupeBy:
    def test_last_value_wins(self):
        rows = [{"mnc": 260, "name": "A"}, {"mnc": 260, "name": "B"}]
        assert dedupe_by(rows, lambda r: r["mnc"]) == [{"mnc": 260, "name": "B"}]

    def test_keys_keep_first_occurrence_order(self):
        rows = [
            {"k": 1, "v": "a"},
            {"k": 2, "v": "b"},
            {"k": 1, "v": "c"},
            {"k": 3, "v": "d"},
        ]
        out = dedupe_by(rows, lambda r: r["k"])
        assert [r["v"] for r in out] == ["c", "b", "d"]

    def test_composite_keys(self):
        rows = [(18.1, 54.2, "x"), (18.1, 54.2, "y"), (18.1, 54.3, "z")]
        out = dedupe_by(rows, lambda r: (r[0], r[1]))
        assert out == [(18.1, 54.2, "y"), (18.1, 54.3, "z")]

    def test_output_never_longer_and_keys_unique(self):
        rows = [{"k": i % 4} for i in range(20)]
        out = dedupe_by(rows, lambda r: r["k"])
        assert len(out) <= len(rows)
        assert len({r["k"] for r in out}) == len(out)

    def test_accepts_generators(self):
        assert dedupe_by((x for x in [1, 1, 2]), lambda x: x) == [1, 2]

    def test_empty(self):
        assert dedupe_by([], lambda x: x) == []


class TestChunked:
    def test_even_split(self):
        assert list(chunked([1, 2, 3, 4], 2)) == [[1, 2], [3, 4]]

    def test_remainder(self):
        assert list(chunked([1, 2, 3, 4, 5], 2)) == [[1, 2], [3, 4], [5]]

    def test_none_size_is_one_chunk(self):
        assert list(chunked([1, 2, 3], None)) == [[1, 2, 3]]

    def test_non_positive_size_is_one_chunk(self):
        assert list(chunked([1, 2, 3], 0)) == [[1, 2, 3]]
        assert list(chunked([1, 2, 3], -5)) == [[1, 2, 3]]

    def test_empty_yields_nothing(self):
        assert list(chunked([], 10)) == []
