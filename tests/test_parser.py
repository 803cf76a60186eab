from politecrawl.crawler.parser import ContentParser

PAGE = """
<html lang="en">
<head>
  <title>  Example   Page </title>
  <meta name="description" content="A test page">
  <meta name="keywords" content="test, crawler">
</head>
<body>
  <a href="/about/">About</a>
  <a href="/about#team">Team</a>
  <a href="https://Other.example.org/x?q=1#frag">Other</a>
  <a href="mailto:hi@example.com">Mail</a>
  <a href="JavaScript:alert(1)">JS</a>
  <a href="ftp://example.com/file">FTP</a>
  <a href="/files/report.pdf">PDF</a>
  <a href="#top">Top</a>
  <a href="">Empty</a>
</body>
</html>
"""


def test_parse_extracts_metadata_and_links():
    parsed = ContentParser().parse("https://example.com/index", PAGE)

    assert parsed.title == "Example Page"
    assert parsed.meta_description == "A test page"
    assert parsed.meta_keywords == "test, crawler"
    assert parsed.language == "en"
    assert parsed.links == [
        "https://example.com/about",
        "https://other.example.org/x?q=1",
    ]


def test_allowed_and_blocked_domains():
    only_example = ContentParser(allowed_domains=["example.com"])
    assert only_example.extract_links("https://example.com/", PAGE) == ["https://example.com/about"]

    block_other = ContentParser(blocked_domains=["other.example.org"])
    assert "https://other.example.org/x?q=1" not in block_other.extract_links("https://example.com/", PAGE)


def test_normalize_url():
    parser = ContentParser()
    assert parser.normalize_url("https://EXAMPLE.com/a/b/#x") == "https://example.com/a/b"
    assert parser.normalize_url("https://example.com/") == "https://example.com"
