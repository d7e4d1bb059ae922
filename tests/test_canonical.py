from prtimes_engine.etl import canonical
from prtimes_engine.models import CompanyRelease


def test_extract_domain_rejects_non_urls():
    assert canonical.extract_domain("not a url") is None
    assert canonical.extract_domain("") is None
    assert canonical.extract_domain("   ") is None
    assert canonical.extract_domain(None) is None


def test_extract_domain_normalises_host():
    assert canonical.extract_domain("WWW.Example.CO.JP") == "example.co.jp"
    assert canonical.extract_domain("https://www.example.com/news/1") == "example.com"
    assert canonical.extract_domain("HTTP://Example.com:8080/path?q=1") == "example.com"
    assert canonical.extract_domain("  example.com  ") == "example.com"


def test_extract_domain_is_deterministic():
    values = {canonical.extract_domain("https://WWW.prtimes.jp/main") for _ in range(5)}
    assert values == {"prtimes.jp"}


def test_normalize_name_strips_legal_entities_and_whitespace():
    assert canonical.normalize_name("株式会社 サンプル") == "サンプル"
    assert canonical.normalize_name("サンプル（株）") == "サンプル"
    assert canonical.normalize_name("Sample Co., Ltd.") == "sample"
    assert canonical.normalize_name("Acme Inc.") == "acme"
    assert canonical.normalize_name("  ") == canonical.NO_NAME
    assert canonical.normalize_name(None) == canonical.NO_NAME


def test_canonical_key_prefers_domain_then_name_then_id():
    with_site = CompanyRelease(id=1, company_name="株式会社サンプル", company_website="https://www.sample.jp")
    bad_site = CompanyRelease(id=2, company_name="株式会社サンプル", company_website="not a url")
    only_entity = CompanyRelease(id=3, company_name="株式会社", company_website="not a url")

    assert canonical.canonical_key(with_site) == "sample.jp"
    assert canonical.canonical_key(bad_site) == "サンプル"
    assert canonical.canonical_key(only_entity) == "fallback_3"


def test_is_usable_website():
    assert canonical.is_usable_website("https://example.com") is True
    assert canonical.is_usable_website("not a url") is True
    assert canonical.is_usable_website("-") is False
    assert canonical.is_usable_website(" ") is False
    assert canonical.is_usable_website(None) is False


def test_extract_domain_handles_authority_parts():
    assert canonical.extract_domain("https://user:pw@www.Example.com:8080/x") == "example.com"
    assert canonical.extract_domain("example.com?ref=1#top") == "example.com"
    assert canonical.extract_domain("www.") is None
    assert canonical.extract_domain("https://[::1]/") is None
    assert canonical.extract_domain("exa\tmple.com") is None
    assert canonical.extract_domain("\u3000example.com\u3000") == "example.com"
    assert canonical.extract_domain("https://例え.jp") is None


def test_full_width_space_counts_as_whitespace():
    assert canonical.normalize_name("\u3000") == canonical.NO_NAME
    assert canonical.normalize_name("サンプル\u3000株式会社") == "サンプル"
    assert canonical.is_usable_website("\u3000") is False
    assert canonical.is_usable_website("\u3000-\u3000") is False


def test_canonical_key_sql_mirrors_python_rules():
    sql = canonical.CANONICAL_KEY_SQL
    assert sql.startswith("CASE ")
    assert "'no-name'" in sql
    assert "'fallback_' || id::text" in sql
    assert "'^www\\.'" in sql
    assert "btrim" not in sql
    # Same whitespace class as the Python side, full-width space included.
    assert "[ \\t\\n\\r\\f\\v\u3000]" in sql
    assert "[ \\t\\n\\r\\f\\v\u3000]" in canonical.USABLE_WEBSITE_SQL
