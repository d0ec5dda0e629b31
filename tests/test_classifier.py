"""Tests for classifier.py — titles, categories and episode numbering."""

from mediavault.classifier import classify, clean_title
from mediavault.models import Category


def test_clean_title_cuts_at_year():
    assert clean_title("The.Matrix.1999.1080p.BluRay.x264.mkv") == "The Matrix"


def test_clean_title_strips_junk_without_year():
    assert clean_title("Some_Movie_1080p_WEBRip.mp4") == "Some Movie"


def test_clean_title_drops_stored_unique_suffix():
    assert clean_title("My Movie-1700000000000-abcdef0123456789.mkv") == "My Movie"


def test_clean_title_empty_falls_back_to_raw():
    assert clean_title("1080p.mkv") == "1080p.mkv"


def test_classify_movie():
    result = classify("The.Matrix.1999.1080p.mkv")
    assert result.category == Category.MOVIE
    assert result.title == "The Matrix"
    assert result.season is None
    assert result.episode is None


def test_classify_sxxexx():
    result = classify("Show.Name.S01E02.720p.mkv")
    assert result.category == Category.SHOW
    assert result.title == "Show Name"
    assert (result.season, result.episode) == (1, 2)


def test_classify_nxnn():
    result = classify("Series 2x05.mkv")
    assert result.category == Category.SHOW
    assert (result.season, result.episode) == (2, 5)


def test_classify_season_episode_words():
    result = classify("Some Show Season 3 Episode 4.mp4")
    assert result.category == Category.SHOW
    assert (result.season, result.episode) == (3, 4)
    assert result.title == "Some Show"


def test_classify_resolution_is_not_an_episode():
    result = classify("Film 1920x1080.mp4")
    assert result.category == Category.MOVIE


def test_classify_never_raises_on_odd_input():
    assert classify("").category == Category.MOVIE
    assert classify(None).category == Category.MOVIE
