import numpy as np
import pytest

from weights import WeightStore


def test_init_creates_zero_tables():
    store = WeightStore()
    store.init([16, 256])
    assert len(store) == 2
    assert store.sizes == [16, 256]
    assert all(t.dtype == np.float32 for t in store)
    assert not any(t.any() for t in store)


def test_init_from_option_string():
    store = WeightStore()
    store.init("65536,4096 ,16")
    assert store.sizes == [65536, 4096, 16]


def test_init_rejects_non_positive_size():
    with pytest.raises(ValueError):
        WeightStore().init([16, 0])


def test_save_then_load_restores_tables(tmp_path):
    path = tmp_path / "weights.bin"
    store = WeightStore()
    store.init([4, 3])
    store[0][:] = [0.5, -1.25, 2.0, 3.5]
    store[1][2] = 7.0
    store.save(str(path))

    # uint32 count + 2 x (uint64 length + float32 values)
    assert path.stat().st_size == 4 + (8 + 4 * 4) + (8 + 3 * 4)

    loaded = WeightStore()
    loaded.init([99])
    loaded.load(str(path))
    assert loaded.sizes == [4, 3]
    assert loaded[0].tolist() == [0.5, -1.25, 2.0, 3.5]
    assert loaded[1].tolist() == [0.0, 0.0, 7.0]

    # loaded tables are writable copies
    loaded[1][0] = 1.0
    assert loaded[1][0] == 1.0


def test_load_missing_file_aborts(tmp_path):
    with pytest.raises(SystemExit):
        WeightStore().load(str(tmp_path / "missing.bin"))


def test_load_truncated_file_aborts(tmp_path):
    path = tmp_path / "weights.bin"
    store = WeightStore()
    store.init([8])
    store.save(str(path))
    path.write_bytes(path.read_bytes()[:-4])

    with pytest.raises(SystemExit):
        WeightStore().load(str(path))


def test_save_to_unwritable_destination_aborts(tmp_path):
    store = WeightStore()
    store.init([4])
    with pytest.raises(SystemExit):
        store.save(str(tmp_path / "no_such_dir" / "weights.bin"))
