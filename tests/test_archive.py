"""Tests for staging, deduplication, and promotion in the image archive."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from pathlib import Path

import pytest

from media_archive.archive import ImageArchive, derive_filename, staging_extension
from media_archive.comparison_pool import ComparisonPool, ScanOptions
from media_archive.config import ComparisonConfig
from media_archive.errors import ComparisonError, FetchError, ImageDecodeError, InvalidMediaReferenceError
from media_archive.fetcher import MediaFetcher
from media_archive.models import UNKNOWN_DIMENSION, Image, MediaReference
from tests.utils.images import write_image

OPTIONS = ScanOptions.from_config(ComparisonConfig())


class CountingFetcher(MediaFetcher):
    def __init__(self) -> None:
        super().__init__(allow_local=True)
        self.urls: list[str] = []

    def fetch_to(self, url: str, destination: Path) -> int:
        self.urls.append(url)
        return super().fetch_to(url, destination)


class FailingPool(ComparisonPool):
    def __init__(self) -> None:
        super().__init__(use_processes=False)
        self.calls = 0

    def find_match(self, candidate_path: Path, archive_dir: Path, filenames: Sequence[str], options: ScanOptions) -> str | None:
        self.calls += 1
        raise ComparisonError("comparison worker died")


@pytest.fixture
def pool() -> Iterator[ComparisonPool]:
    comparison_pool = ComparisonPool(use_processes=False)
    yield comparison_pool
    comparison_pool.shutdown()


@pytest.fixture
def fetcher() -> Iterator[CountingFetcher]:
    counting = CountingFetcher()
    yield counting
    counting.close()


@pytest.fixture
def archive(tmp_path: Path, pool: ComparisonPool, fetcher: CountingFetcher) -> ImageArchive:
    image_archive = ImageArchive(tmp_path / "images", pool=pool, fetcher=fetcher, options=OPTIONS)
    image_archive.prepare()
    return image_archive


def _media(path: Path, width: int | None = None, height: int | None = None) -> MediaReference:
    return MediaReference(url=path.as_uri(), width=width, height=height)


def _staging_files(archive: ImageArchive) -> list[Path]:
    return sorted(archive.images_dir.glob("temp_*"))


def test_derive_filename_uses_last_path_segment() -> None:
    assert derive_filename("https://pbs.example.com/media/Abc123.jpg") == "Abc123.jpg"
    assert derive_filename("https://pbs.example.com/media/Abc123.jpg?format=jpg&name=large") == "Abc123.jpg"
    assert derive_filename("https://pbs.example.com/media/a%20b.png#frag") == "a b.png"
    assert derive_filename("/srv/media/cat.jpg") == "cat.jpg"


@pytest.mark.parametrize(
    "url",
    ["", "https://pbs.example.com/media/", "https://pbs.example.com/..", "https://pbs.example.com/temp_3.jpg"],
)
def test_derive_filename_rejects_unusable_urls(url: str) -> None:
    with pytest.raises(InvalidMediaReferenceError):
        derive_filename(url)


def test_staging_extension_defaults_to_bin() -> None:
    assert staging_extension("cat.JPG") == "jpg"
    assert staging_extension("cat") == "bin"


def test_novel_image_is_promoted_under_derived_filename(archive: ImageArchive, source_dir: Path) -> None:
    source = write_image(source_dir / "cat.png", seed=1)

    image = archive.resolve(_media(source))

    assert image == Image(filename="cat.png", width=64, height=64)
    assert (archive.images_dir / "cat.png").read_bytes() == source.read_bytes()
    assert len(archive) == 1
    assert "cat.png" in archive
    assert _staging_files(archive) == []


def test_repeated_reference_hits_cache_without_refetching(
    archive: ImageArchive, fetcher: CountingFetcher, source_dir: Path
) -> None:
    source = write_image(source_dir / "cat.png", seed=1)

    first = archive.resolve(_media(source))
    second = archive.resolve(_media(source))

    assert second is first
    assert fetcher.urls == [source.as_uri()]
    assert len(archive) == 1


def test_similar_image_resolves_to_existing_entry(archive: ImageArchive, source_dir: Path) -> None:
    original = write_image(source_dir / "cat.png", seed=1)
    recompressed = write_image(source_dir / "cat_copy.jpg", seed=1, quality=70)

    first = archive.resolve(_media(original))
    second = archive.resolve(_media(recompressed))

    assert second == first
    assert archive.filenames() == ["cat.png"]
    assert not (archive.images_dir / "cat_copy.jpg").exists()
    assert _staging_files(archive) == []


def test_distinct_images_grow_the_archive_in_order(archive: ImageArchive, source_dir: Path) -> None:
    for name, seed in (("cat.png", 1), ("dog.png", 2), ("owl.png", 3)):
        archive.resolve(_media(write_image(source_dir / name, seed=seed)))

    assert archive.filenames() == ["cat.png", "dog.png", "owl.png"]
    assert [image.filename for image in archive.list_images()] == ["cat.png", "dog.png", "owl.png"]


def test_first_similar_image_in_insertion_order_wins(archive: ImageArchive, source_dir: Path) -> None:
    for name in ("second.png", "first.png"):
        write_image(archive.images_dir / name, seed=1)
    archive.load_records(
        [
            {"filename": "second.png", "width": 64, "height": 64},
            {"filename": "first.png", "width": 64, "height": 64},
        ]
    )

    match = archive.resolve(_media(write_image(source_dir / "third.jpg", seed=1, quality=90)))

    assert match.filename == "second.png"
    assert len(archive) == 2


def test_media_dimensions_take_precedence_when_positive(archive: ImageArchive, source_dir: Path) -> None:
    cat = archive.resolve(_media(write_image(source_dir / "cat.png", seed=1), width=1200, height=800))
    dog = archive.resolve(_media(write_image(source_dir / "dog.png", seed=2), width=0, height=-5))

    assert (cat.width, cat.height) == (1200, 800)
    assert (dog.width, dog.height) == (64, 64)


def test_fetch_failure_leaves_no_staged_file(archive: ImageArchive, source_dir: Path) -> None:
    with pytest.raises(FetchError):
        archive.resolve(_media(source_dir / "missing.png"))

    empty = source_dir / "empty.png"
    empty.write_bytes(b"")
    with pytest.raises(FetchError, match="empty body"):
        archive.resolve(_media(empty))

    assert len(archive) == 0
    assert _staging_files(archive) == []


def test_undecodable_media_is_rejected_and_cleaned_up(archive: ImageArchive, source_dir: Path) -> None:
    bogus = source_dir / "bogus.jpg"
    bogus.write_text("<html>not an image</html>", encoding="utf-8")

    with pytest.raises(ImageDecodeError):
        archive.resolve(_media(bogus))

    assert len(archive) == 0
    assert list(archive.images_dir.iterdir()) == []


def test_invalid_reference_is_rejected_before_fetching(archive: ImageArchive, fetcher: CountingFetcher) -> None:
    with pytest.raises(InvalidMediaReferenceError):
        archive.resolve(MediaReference(url=""))
    with pytest.raises(InvalidMediaReferenceError):
        archive.resolve(MediaReference(url="ftp://files.example.com/cat.png"))

    assert fetcher.urls == []


def test_local_reference_is_rejected_when_local_copies_are_disabled(
    tmp_path: Path, pool: ComparisonPool, source_dir: Path
) -> None:
    secret = write_image(source_dir / "secret.png", seed=9)
    remote_only = MediaFetcher()
    archive = ImageArchive(tmp_path / "images", pool=pool, fetcher=remote_only, options=OPTIONS)
    archive.prepare()
    try:
        with pytest.raises(InvalidMediaReferenceError):
            archive.resolve(_media(secret))
        with pytest.raises(InvalidMediaReferenceError):
            archive.resolve(MediaReference(url=str(secret)))
    finally:
        remote_only.close()

    assert len(archive) == 0
    assert list(archive.images_dir.iterdir()) == []


def test_comparison_failure_assumes_novel_by_default(tmp_path: Path, fetcher: CountingFetcher, source_dir: Path) -> None:
    failing = FailingPool()
    archive = ImageArchive(tmp_path / "images", pool=failing, fetcher=fetcher, options=OPTIONS)
    archive.prepare()

    archive.resolve(_media(write_image(source_dir / "cat.png", seed=1)))
    archive.resolve(_media(write_image(source_dir / "cat_copy.png", seed=1)))

    # The empty archive is never scanned.
    assert failing.calls == 1
    assert archive.filenames() == ["cat.png", "cat_copy.png"]


def test_comparison_failure_drops_item_under_drop_policy(
    tmp_path: Path, fetcher: CountingFetcher, source_dir: Path
) -> None:
    archive = ImageArchive(
        tmp_path / "images", pool=FailingPool(), fetcher=fetcher, options=OPTIONS, failure_policy="drop"
    )
    archive.prepare()
    archive.resolve(_media(write_image(source_dir / "cat.png", seed=1)))

    with pytest.raises(ComparisonError):
        archive.resolve(_media(write_image(source_dir / "dog.png", seed=2)))

    assert archive.filenames() == ["cat.png"]
    assert _staging_files(archive) == []


def test_prepare_sweeps_staging_leftovers(tmp_path: Path, pool: ComparisonPool, fetcher: CountingFetcher) -> None:
    images_dir = tmp_path / "images"
    images_dir.mkdir()
    (images_dir / "temp_0.jpg").write_bytes(b"partial")
    (images_dir / "temp_17.bin").write_bytes(b"partial")
    (images_dir / "cat.png").write_bytes(b"kept")

    archive = ImageArchive(images_dir, pool=pool, fetcher=fetcher, options=OPTIONS)

    assert archive.prepare() == 2
    assert sorted(path.name for path in images_dir.iterdir()) == ["cat.png"]


def test_load_records_skips_missing_files_and_bad_records(archive: ImageArchive) -> None:
    write_image(archive.images_dir / "cat.png", seed=1)

    loaded = archive.load_records(
        [
            {"filename": "cat.png", "width": 64, "height": 64},
            {"filename": "gone.png", "width": 10, "height": 10},
            {"width": 5},
            {"filename": "temp_1.png"},
        ]
    )

    assert loaded == 1
    assert archive.get("cat.png") == Image(filename="cat.png", width=64, height=64)


def test_accessors_and_snapshot(archive: ImageArchive, source_dir: Path) -> None:
    source = write_image(source_dir / "cat.png", seed=1)
    archive.resolve(_media(source))

    assert archive.read_bytes("cat.png") == source.read_bytes()
    assert archive.read_bytes("dog.png") is None
    assert archive.image_path("dog.png") is None
    assert archive.snapshot_records() == [{"filename": "cat.png", "width": 64, "height": 64}]

    (archive.images_dir / "cat.png").unlink()
    assert archive.read_bytes("cat.png") is None


def test_unknown_dimensions_default_to_sentinel() -> None:
    image = Image.from_record({"filename": "cat.png", "width": None, "height": 0})

    assert (image.width, image.height) == (UNKNOWN_DIMENSION, UNKNOWN_DIMENSION)


def test_clear_removes_every_canonical_file(archive: ImageArchive, source_dir: Path) -> None:
    archive.resolve(_media(write_image(source_dir / "cat.png", seed=1)))
    archive.resolve(_media(write_image(source_dir / "dog.png", seed=2)))

    assert archive.clear() == 2
    assert len(archive) == 0
    assert list(archive.images_dir.iterdir()) == []
