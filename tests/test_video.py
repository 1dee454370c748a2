import pytest

from watchtogether.utils.video import extract_youtube_id, parse_video_url


@pytest.mark.parametrize(
    "url",
    [
        "https://www.youtube.com/watch?v=YoHD9XEInc0",
        "https://youtube.com/watch?list=PL1&v=YoHD9XEInc0",
        "https://youtu.be/YoHD9XEInc0",
        "https://www.youtube.com/embed/YoHD9XEInc0",
    ],
)
def test_youtube_urls(url):
    assert extract_youtube_id(url) == "YoHD9XEInc0"

    video = parse_video_url(url)
    assert video.type == "youtube"
    assert video.url == "https://www.youtube.com/watch?v=YoHD9XEInc0"
    assert video.thumbnail == "https://img.youtube.com/vi/YoHD9XEInc0/maxresdefault.jpg"
    assert video.duration is None


def test_file_url_uses_filename_as_title():
    video = parse_video_url("https://cdn.example.com/media/Lecture-01.MP4?token=x")
    assert video.type == "file"
    assert video.title == "lecture-01.mp4"


def test_other_url():
    video = parse_video_url("https://vimeo.com/12345")
    assert video.type == "url"
    assert video.title == "Video"
    assert video.duration is None


@pytest.mark.parametrize("url", [None, ""])
def test_no_video(url):
    video = parse_video_url(url)
    assert video.url == ""
    assert video.title == "No video selected"
