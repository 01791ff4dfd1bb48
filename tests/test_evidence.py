from evidence import (
    NEEDS_DEPTH,
    NEEDS_MORE,
    SUFFICIENT,
    EvidenceItem,
    EvidenceSource,
    ExtractedDoc,
    assess_sufficiency,
    build_evidence_items,
    normalize_claim,
)


def items(count, domains, support=1, quotes=0):
    out = []
    for i in range(count):
        host = f"site{i % domains}.com" if domains else ""
        out.append(
            EvidenceItem(
                claim=f"claim {i}",
                support_count=support if i == 0 else 1,
                sources=[EvidenceSource(url=f"https://{host}/{i}")] if host else [],
                examples=["quote"] if i < quotes else [],
            )
        )
    return out


def test_normalize_claim_strips_punctuation_and_case():
    assert normalize_claim("  Hello, World!  It's   (fine).") == "hello world it s fine"
    assert normalize_claim("") == ""


def test_build_evidence_items_merges_and_counts_support():
    docs = [
        ExtractedDoc(url="https://a.com/1", facts=["Rates rose in 2023.", "Inflation fell"]),
        ExtractedDoc(url="https://b.com/1", facts=["rates rose in 2023"]),
        ExtractedDoc(url="https://a.com/1", facts=["Rates rose in 2023"]),
    ]

    result = build_evidence_items(docs)

    assert [i.claim for i in result] == ["Rates rose in 2023.", "Inflation fell"]
    assert result[0].support_count == 3
    assert [s.url for s in result[0].sources] == ["https://a.com/1", "https://b.com/1"]


def test_first_quote_attaches_to_last_fact_up_to_three():
    docs = [
        ExtractedDoc(url=f"https://s{i}.com", facts=["Alpha", "Beta"], quotes=[f"q{i}", "other"])
        for i in range(5)
    ]

    result = build_evidence_items(docs)
    beta = next(i for i in result if i.claim == "Beta")
    alpha = next(i for i in result if i.claim == "Alpha")

    assert beta.examples == ["q0", "q1", "q2"]
    assert alpha.examples == []


def test_source_weight_callback_is_applied():
    docs = [ExtractedDoc(url="https://a.gov/x", facts=["Fact"])]
    [item] = build_evidence_items(docs, source_weight=lambda url: 0.9)
    assert item.sources[0].weight == 0.9


def test_sufficient_at_exact_thresholds():
    assert assess_sufficiency("q", items(8, 3, support=2)).status == SUFFICIENT


def test_missing_corroboration_with_no_quotes_needs_depth():
    assert assess_sufficiency("q", items(8, 3, support=1)).status == NEEDS_DEPTH


def test_narrow_domains_need_depth():
    assert assess_sufficiency("q", items(4, 1, quotes=5)).status == NEEDS_DEPTH


def test_enough_items_and_support_but_one_domain_needs_depth():
    assert assess_sufficiency("q", items(8, 1, support=2)).status == NEEDS_DEPTH


def test_enough_domains_and_quotes_but_few_items_needs_more():
    assert assess_sufficiency("q", items(4, 2, quotes=2)).status == NEEDS_MORE
    assert assess_sufficiency("q", items(3, 1)).status == NEEDS_MORE
    assert assess_sufficiency("q", []).status == NEEDS_MORE


def test_assessment_is_deterministic():
    evidence = items(5, 2, support=2, quotes=1)
    first = assess_sufficiency("Why?", evidence)
    second = assess_sufficiency("Why?", evidence)
    assert first == second
    assert "items=5" in first.reason
