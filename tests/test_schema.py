from devincubator.schema import generate_json_schema, generate_schema_doc


def test_json_schema_describes_plan():
    schema = generate_json_schema()
    assert schema["required"] == ["groups"]
    defs = list(schema["$defs"])
    # referenced types come before the types that reference them
    assert defs.index("AssertionConfig") < defs.index("GroupConfig")
    assert defs.index("ToolCheck") < defs.index("GroupConfig")


def test_schema_doc_lists_every_kind():
    doc = generate_schema_doc()
    for kind in ("package", "service", "file", "group_membership", "repository", "extension", "command"):
        assert f"- `{kind}`" in doc
    assert "`service` (states: started, stopped)" in doc


def test_json_schema_publishes_params_per_kind():
    schema = generate_json_schema()
    service = schema["x-kinds"]["service"]
    assert service["states"] == ["started", "stopped"]
    params = schema["$defs"][service["params"]["$ref"].rsplit("/", 1)[-1]]
    assert "name" in params["properties"]
    assert "GroupMembershipParams" in schema["$defs"]
