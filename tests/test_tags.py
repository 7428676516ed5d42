import os

import pytest

from errors import InvalidTagName
from tags import Assignment, TagStore, validate_tag


@pytest.mark.parametrize("name", ["Favorites", "Sci-Fi & Fantasy", "Kinder 👶", "a" * 255])
def test_validate_tag_accepts(name):
    assert validate_tag(name) == name


@pytest.mark.parametrize(
    "name",
    ["", " padded", "trailing ", "a/b", "nul\0", ".", "..", ".hidden", "ä" * 128, None],
)
def test_validate_tag_rejects(name):
    with pytest.raises(InvalidTagName):
        validate_tag(name)


def test_invalid_tag_is_a_value_error():
    with pytest.raises(ValueError):
        validate_tag("a/b")


def test_add_remove_and_reads():
    store = TagStore()
    store.add("Favorites", "/m/A.mkv")
    store.add("Favorites", "/m/B.mkv")
    store.add("Kids", "/m/A.mkv")

    assert store.tags() == ["Favorites", "Kids"]
    assert store.movies_for("Favorites") == {"/m/A.mkv", "/m/B.mkv"}
    assert store.tags_for("/m/A.mkv") == {"Favorites", "Kids"}

    store.remove("Kids", "/m/A.mkv")
    assert store.tags() == ["Favorites"]
    # Removing something that is not there is a no-op
    store.remove("Kids", "/m/A.mkv")
    store.remove("Unknown", "/m/A.mkv")
    assert store.snapshot() == {
        Assignment("Favorites", "/m/A.mkv"),
        Assignment("Favorites", "/m/B.mkv"),
    }


def test_add_rejects_invalid_tag():
    store = TagStore()
    with pytest.raises(InvalidTagName):
        store.add("../escape", "/m/A.mkv")
    assert store.tags() == []


def test_toggle():
    store = TagStore()
    assert store.toggle("Favorites", "/m/A.mkv") is True
    assert store.toggle("Favorites", "/m/A.mkv") is False
    assert store.tags() == []


def test_replace_validates_before_changing():
    store = TagStore()
    store.add("Favorites", "/m/A.mkv")
    with pytest.raises(InvalidTagName):
        store.replace([Assignment("Kids", "/m/B.mkv"), Assignment("", "/m/C.mkv")])
    assert store.tags() == ["Favorites"]

    store.replace([Assignment("Kids", "/m/B.mkv")])
    assert store.snapshot() == {Assignment("Kids", "/m/B.mkv")}


def test_prune():
    store = TagStore()
    store.add("Favorites", "/m/A.mkv")
    store.add("Favorites", "/m/B.mkv")
    store.add("Old", "/m/Gone.mkv")

    pruned = store.prune({"/m/A.mkv", "/m/B.mkv"})
    assert pruned == [Assignment("Old", "/m/Gone.mkv")]
    assert store.tags() == ["Favorites"]


def test_leaf_names_are_stable_and_disambiguated():
    store = TagStore()
    store.add("T", "/a/Heat.mkv")
    store.add("T", "/b/Heat.mkv")

    first = store.leaf_name("/a/Heat.mkv")
    second = store.leaf_name("/b/Heat.mkv")
    assert first == "Heat.mkv"
    assert second != first
    assert second.startswith("Heat [") and second.endswith("].mkv")

    # Removing the first claimant does not rename the second
    store.remove("T", "/a/Heat.mkv")
    assert store.leaf_name("/b/Heat.mkv") == second
    assert store.leaf_names() == {"/a/Heat.mkv": first, "/b/Heat.mkv": second}


def test_load_from_disk(tmp_path):
    movies = tmp_path / "movies"
    movies.mkdir()
    (movies / "A.mkv").write_bytes(b"a")
    tags = tmp_path / "tags"
    (tags / "Favorites").mkdir(parents=True)
    (tags / ".hidden").mkdir()
    os.symlink(str(movies / "A.mkv"), str(tags / "Favorites" / "A [custom].mkv"))
    os.symlink(str(movies / "gone.mkv"), str(tags / "Favorites" / "gone.mkv"))

    store = TagStore.from_tag_root(str(tags))
    a = os.path.realpath(str(movies / "A.mkv"))
    assert store.snapshot() == {Assignment("Favorites", a)}
    # Leaf names found on disk are adopted
    assert store.leaf_name(a) == "A [custom].mkv"


def test_load_from_missing_root(tmp_path):
    store = TagStore.from_tag_root(str(tmp_path / "missing"))
    assert store.tags() == []


def test_load_from_disk_allocates_leaf_for_conflicting_link(tmp_path):
    for sub in ("a", "b", "c"):
        (tmp_path / "movies" / sub).mkdir(parents=True)
        (tmp_path / "movies" / sub / "Heat.mkv").write_bytes(b"x")
    tags = tmp_path / "tags"
    (tags / "Action").mkdir(parents=True)
    (tags / "Crime").mkdir()
    os.symlink(str(tmp_path / "movies" / "a" / "Heat.mkv"), str(tags / "Action" / "Heat.mkv"))
    os.symlink(str(tmp_path / "movies" / "b" / "Heat.mkv"), str(tags / "Crime" / "Heat.mkv"))

    store = TagStore.from_tag_root(str(tags))
    a = os.path.realpath(str(tmp_path / "movies" / "a" / "Heat.mkv"))
    b = os.path.realpath(str(tmp_path / "movies" / "b" / "Heat.mkv"))
    c = os.path.realpath(str(tmp_path / "movies" / "c" / "Heat.mkv"))

    # Both targets have a leaf right after loading
    leaves = store.leaf_names()
    assert leaves[a] == "Heat.mkv"
    assert leaves[b].startswith("Heat [")

    # A later movie with the same base name never takes either of them
    store.add("Crime", c)
    assert store.leaf_name(c) not in {leaves[a], leaves[b]}
    assert store.leaf_name(b) == leaves[b]
