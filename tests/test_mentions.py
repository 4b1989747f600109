from agentroom.mentions import parse_mentions, resolve_mentioned_agents

ROSTER = [
    {"id": "a1", "name": "Researcher"},
    {"id": "a2", "name": "analyst"},
    {"id": "a3", "name": "writer_2"},
]


def test_parse_mentions_keeps_first_occurrence_order_and_dedupes():
    text = "@analyst check this, then @Researcher, and @ANALYST again"
    assert parse_mentions(text) == ["analyst", "researcher"]


def test_parse_mentions_stops_at_punctuation():
    assert parse_mentions("ping @writer_2, @analyst.") == ["writer_2", "analyst"]
    assert parse_mentions("mail me at bob@example.com") == ["example"]
    assert parse_mentions("") == []
    assert parse_mentions(None) == []


def test_resolve_is_case_insensitive_and_in_mention_order():
    targets = resolve_mentioned_agents("@ANALYST then @researcher", ROSTER)
    assert [t["id"] for t in targets] == ["a2", "a1"]


def test_resolve_skips_names_that_are_not_roster_agents():
    targets = resolve_mentioned_agents("@alice can you ask @writer_2?", ROSTER)
    assert [t["id"] for t in targets] == ["a3"]


def test_resolve_excludes_the_author():
    text = "I am @researcher; @analyst please verify"
    targets = resolve_mentioned_agents(text, ROSTER, exclude_name="Researcher")
    assert [t["id"] for t in targets] == ["a2"]


def test_resolve_never_returns_duplicates():
    targets = resolve_mentioned_agents("@analyst @analyst @Analyst", ROSTER)
    assert len(targets) == 1
