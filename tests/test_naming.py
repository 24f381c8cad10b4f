import unicodedata

import pytest

from takeout_fixer.matching.naming import NameNormalizer, normalize
from takeout_fixer.matching.rules import DEFAULT_RULES, RULESETS, get_rules
from takeout_fixer.models import NormalizedKey


def test_media_and_sidecar_share_stem():
    media = normalize("Album/photo.jpg")
    sidecar = normalize("Album/photo.jpg.json")

    assert media == NormalizedKey("Album", "photo", ".jpg", "image")
    assert sidecar.kind == "sidecar"
    assert (sidecar.directory, sidecar.stem, sidecar.extension) == ("Album", "photo", ".jpg")


def test_root_directory_is_empty_string():
    assert normalize("photo.mp4").directory == ""
    assert normalize("photo.mp4").kind == "video"


def test_backslashes_are_path_separators():
    assert normalize("Album\\Sub\\photo.jpg").directory == "Album/Sub"


@pytest.mark.parametrize("name", [
    "photo.jpg.supplemental-metadata.json",
    "photo.jpg.supplemental-metad.json",
    "photo.jpg.supp.json",
    "photo.jpg.s.json",
])
def test_supplemental_marker_and_truncations(name):
    key = normalize(name)
    assert key.stem == "photo"
    assert key.extension == ".jpg"
    assert key.supplemental
    assert key.counter == 0


def test_counter_after_supplemental_marker():
    key = normalize("IMG_0001.JPG.supplemental-metadata(1).json")
    assert (key.stem, key.extension, key.counter, key.supplemental) == ("IMG_0001", ".JPG", 1, True)


def test_legacy_counter_after_extension():
    key = normalize("photo.jpg(2).json")
    assert (key.stem, key.extension, key.counter) == ("photo", ".jpg", 2)


def test_media_counter():
    key = normalize("photo(1).jpg")
    assert (key.stem, key.counter, key.edited) == ("photo", 1, False)


def test_edited_marker():
    key = normalize("photo-edited.jpg")
    assert key.stem == "photo"
    assert key.edited


def test_localized_edited_marker_after_nfc():
    decomposed = unicodedata.normalize("NFD", "photo-modifié.jpg")
    key = normalize(decomposed)
    assert key.stem == "photo"
    assert key.edited


def test_counter_and_edited_marker_combined():
    key = normalize("photo(1)-edited.jpg")
    assert (key.stem, key.counter, key.edited) == ("photo", 1, True)


def test_counter_only_name_is_kept():
    assert normalize("(1).jpg").stem == "(1)"


def test_album_metadata_is_not_a_sidecar():
    assert normalize("Album/metadata.json").kind == "other"
    assert normalize("Album/metadata(1).json").kind == "other"
    assert normalize("Album/print-subscriptions.json").kind == "other"


def test_truncated_sidecar_keeps_partial_title():
    key = normalize("longfilenamethatexceedsthetrunc.json")
    assert key.kind == "sidecar"
    assert key.extension == ""
    assert key.title == "longfilenamethatexceedsthetrunc"


def test_unknown_extension_is_other():
    key = normalize("notes.txt")
    assert key.kind == "other"
    assert key.extension == ""


@pytest.mark.parametrize("path", [
    "Album/photo.jpg",
    "Album/photo(1)-edited.jpg",
    "Album/a-edited-edited.png",
    "photo.jpg.supplemental-metadata(1).json",
    "photo.jpg(1).json",
    "longfilenamethatexceedsthetrunc.json",
    "Album/metadata.json",
    "clip.MP4",
])
def test_normalization_is_idempotent(path):
    key = normalize(path)
    again = normalize(f"{key.directory}/{key.title}" if key.directory else key.title)
    assert again.stem == key.stem


def test_is_truncated_uses_rule_length():
    normalizer = NameNormalizer(get_rules(truncation_length=31))
    assert normalizer.rules.min_prefix_length == 27
    assert normalizer.is_truncated(normalize("longfilenamethatexceedsthetruncationlimit.jpg"))
    assert not normalizer.is_truncated(normalize("short.jpg"))


def test_marker_variants_longest_first():
    variants = DEFAULT_RULES.marker_variants()
    assert variants[0] == "supplemental-metadata"
    assert variants[-1] == "s"
    assert len(variants) == len("supplemental-metadata")


def test_get_rules():
    assert get_rules() is RULESETS["2024.1"]
    assert get_rules("legacy").truncation_length == 46
    assert get_rules("legacy", truncation_length=40).truncation_length == 40

    with pytest.raises(ValueError):
        get_rules("nope")
    with pytest.raises(ValueError):
        get_rules(truncation_length=0)
