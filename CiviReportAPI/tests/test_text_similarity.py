import pytest

from CiviReportAPI.text_similarity import normalize, report_text, similarity

REPORTS = [
    "Pothole on Main St",
    "Big pothole at Main Street",
    "Broken streetlight near the park entrance",
    "Water main leak flooding Elm Ave",
    "",
]


@pytest.mark.parametrize("text", REPORTS)
def test_text_with_itself_scores_100(text):
    assert similarity(text, text) == 100.0


@pytest.mark.parametrize("a", REPORTS)
@pytest.mark.parametrize("b", REPORTS)
def test_similarity_is_symmetric(a, b):
    assert similarity(a, b) == similarity(b, a)


def test_reworded_report_is_a_duplicate():
    assert similarity("Pothole on Main St", "Big pothole at Main Street") >= 80


def test_unrelated_reports_are_not_duplicates():
    assert similarity("Pothole on Main St", "Broken streetlight near the park entrance") < 80
    assert similarity("Water main leak flooding Elm Ave", "Graffiti on the library wall") < 80


def test_normalization_expands_abbreviations_and_drops_stopwords():
    assert normalize("The pothole on Main St.") == "pothole main street"
    assert normalize("Elm Ave & 3rd Rd") == "elm avenue 3rd road"


def test_formatting_differences_score_100():
    assert similarity("Pothole on Main St", "pothole, main street!") == 100.0


def test_report_text_joins_title_and_description():
    assert report_text("Pothole", "Deep one") == "Pothole Deep one"
    assert report_text("Pothole", None) == "Pothole"
