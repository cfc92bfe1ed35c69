from decisionflow.service.expressions import (
    collect_string_leaves,
    extract_param_codes,
    extract_references,
    flatten_leaf_entries,
    iter_expressions,
    render_template,
)


def test_field_reference_with_whitespace():
    (expr,) = list(iter_expressions("price: {{  f1.price  }}"))
    assert expr.scope == "f1"
    assert expr.path == "price"
    assert expr.default is None
    assert expr.raw == "{{  f1.price  }}"


def test_default_after_pipe():
    (expr,) = list(iter_expressions("{{input.qty | default: 0}}"))
    assert expr.reference == "input.qty"
    assert expr.default == "0"


def test_quoted_default_may_contain_pipes_and_braces():
    (expr,) = list(iter_expressions("x {{input.note | 'a|b}}'}} y"))
    assert expr.reference == "input.note"
    assert expr.default == "a|b}}"


def test_nested_braces_stay_inside_one_expression():
    exprs = list(iter_expressions("{{f1.items.{idx}}} and {{f2.total}}"))
    assert [e.reference for e in exprs] == ["f1.items.{idx}", "f2.total"]


def test_unterminated_expression_is_ignored():
    assert list(iter_expressions("{{f1.price")) == []


def test_stray_quote_does_not_swallow_text():
    exprs = list(iter_expressions("{{input.it's}} then {{f1.price}}"))
    assert [e.reference for e in exprs] == ["input.it's", "f1.price"]


def test_references_need_scope_and_path():
    refs = extract_references("{{name}} {{.x}} {{a.}} {{a.b}}")
    assert [(r.scope, r.path) for r in refs] == [("a", "b")]


def test_param_codes_from_braced_and_bare_references():
    text = "{{params.MARGIN | default: 2}} + params.fee_rate * input.params.ignored"
    assert extract_param_codes(text) == {"MARGIN", "fee_rate"}


def test_param_codes_trim_trailing_punctuation():
    assert extract_param_codes("use params.LIMIT.") == {"LIMIT"}


def test_render_template_leaves_unknown_tokens():
    rendered = render_template(
        "Spot {{input.price}} for {{agent.code}} ({{missing.var}})",
        {"input.price": "7100", "agent.code": "ANALYST"},
    )
    assert rendered == "Spot 7100 for ANALYST ({{missing.var}})"


def test_render_template_matches_reference_before_default():
    rendered = render_template("{{input.qty | default: 1}}", {"input.qty": "5"})
    assert rendered == "5"


def test_leaf_helpers():
    value = {"a": "x", "b": {"c": ["y", {"d": "z"}], "e": 3}}
    assert collect_string_leaves(value) == ["x", "y", "z"]
    assert flatten_leaf_entries(value) == [
        ("a", "x"),
        ("b.c", ["y", {"d": "z"}]),
        ("b.e", 3),
    ]
