"""
Storage layout extraction
- compact declared schemas and solc storageLayout output
- packing offsets, ordering and overlap validation
- malformed metadata surfaces as SchemaExtractionError
"""

import pytest

from proxy_upgrader.artifacts import Implementation
from proxy_upgrader.errors import SchemaExtractionError
from proxy_upgrader.layout import Encoding, analyze, extract_schema, schema_from_json, schema_to_json
from tests.conftest import declared, make_impl

SOLC_LAYOUT = {
    "storage": [
        {"astId": 3, "contract": "src/Box.sol:Box", "label": "_initialized", "offset": 0, "slot": "0", "type": "t_uint8"},
        {"astId": 6, "contract": "src/Box.sol:Box", "label": "_initializing", "offset": 1, "slot": "0", "type": "t_bool"},
        {"astId": 9, "contract": "src/Box.sol:Box", "label": "_owner", "offset": 2, "slot": "0", "type": "t_address"},
        {"astId": 12, "contract": "src/Box.sol:Box", "label": "_value", "offset": 0, "slot": "1", "type": "t_uint256"},
        {"astId": 15, "contract": "src/Box.sol:Box", "label": "balances", "offset": 0, "slot": "2",
         "type": "t_mapping(t_address,t_uint256)"},
    ],
    "types": {
        "t_uint8": {"encoding": "inplace", "label": "uint8", "numberOfBytes": "1"},
        "t_bool": {"encoding": "inplace", "label": "bool", "numberOfBytes": "1"},
        "t_address": {"encoding": "inplace", "label": "address", "numberOfBytes": "20"},
        "t_uint256": {"encoding": "inplace", "label": "uint256", "numberOfBytes": "32"},
        "t_mapping(t_address,t_uint256)": {
            "encoding": "mapping", "key": "t_address", "value": "t_uint256",
            "label": "mapping(address => uint256)", "numberOfBytes": "32",
        },
    },
}


def test_declared_schema_scenario_shape():
    schema = extract_schema("BoxV2", {"storageSchema": declared([(0, "_value", "uint256", 32), (1, "_owner", "address", 20)])})
    assert [(s.index, s.slot, s.offset, s.type_tag, s.byte_width) for s in schema] == [
        (0, 0, 0, "uint256", 32),
        (1, 1, 0, "address", 20),
    ]


def test_declared_schema_packs_into_shared_slot():
    schema = extract_schema("Packed", {"storageSchema": declared([
        (0, "a", "uint128", 16),
        (0, "b", "uint64", 8),
        (0, "c", "bool", 1),
        (1, "d", "mapping(address => uint256)", 32),
    ])})
    assert [s.offset for s in schema] == [0, 16, 24, 0]
    assert schema[3].encoding is Encoding.MAPPING


def test_solc_layout_flattens_in_declaration_order():
    schema = extract_schema("Box", {"storageLayout": SOLC_LAYOUT})
    assert [s.label for s in schema] == ["_initialized", "_initializing", "_owner", "_value", "balances"]
    assert schema[2].slot == 0 and schema[2].offset == 2 and schema[2].byte_width == 20
    assert schema[3].slot == 1
    assert schema[4].type_tag == "mapping(address => uint256)"
    assert schema[4].encoding is Encoding.MAPPING


def test_solc_layout_without_state():
    assert extract_schema("Empty", {"storageLayout": {"storage": [], "types": None}}) == ()


def test_missing_metadata():
    with pytest.raises(SchemaExtractionError, match="no storage metadata"):
        extract_schema("Bare", {})


@pytest.mark.parametrize("metadata", [
    {"storageSchema": [{"slot": 0, "name": "x", "type": "uint256"}]},
    {"storageSchema": [{"slot": -1, "name": "x", "type": "uint256", "bytes": 32}]},
    {"storageSchema": [{"slot": 0, "name": "x", "type": "uint256", "bytes": 0}]},
    {"storageSchema": {"slot": 0}},
    {"storageLayout": {"types": {}}},
    {"storageLayout": {"storage": [{"label": "x", "slot": "zero", "offset": 0, "type": "t_uint256"}], "types": {}}},
])
def test_malformed_metadata(metadata):
    with pytest.raises(SchemaExtractionError):
        extract_schema("Broken", metadata)


def test_unknown_type_reference():
    layout = {"storage": [{"label": "x", "slot": "0", "offset": 0, "type": "t_uint256"}], "types": {}}
    with pytest.raises(SchemaExtractionError, match="unknown type"):
        extract_schema("Broken", {"storageLayout": layout})


def test_overlapping_entries_rejected():
    # a 64-byte struct spans slots 0 and 1
    with pytest.raises(SchemaExtractionError, match="overlaps"):
        extract_schema("Overlap", {"storageSchema": declared([
            (0, "s", "struct Box.Pair", 64),
            (1, "x", "uint256", 32),
        ])})


def test_non_increasing_positions_rejected():
    with pytest.raises(SchemaExtractionError, match="is not after"):
        extract_schema("Order", {"storageSchema": declared([
            (1, "x", "uint256", 32),
            (0, "y", "uint256", 32),
        ])})


def test_packed_entry_must_fit_its_word():
    with pytest.raises(SchemaExtractionError, match="does not fit"):
        extract_schema("Fit", {"storageSchema": declared([
            (0, "a", "address", 20),
            (0, "b", "address", 20),
        ])})


def test_analyze_is_cached_by_identity():
    impl = make_impl("Cached")
    same = Implementation(name="Cached", abi=[], bytecode=impl.bytecode, storage_metadata=impl.storage_metadata)
    assert impl.identity == same.identity
    assert analyze(impl) is analyze(same)


def test_identity_changes_with_schema():
    a = make_impl("Box", [(0, "_value", "uint256", 32)])
    b = make_impl("Box", [(0, "_value", "uint128", 16)])
    assert a.identity != b.identity


def test_schema_json_round_trip():
    schema = extract_schema("Box", {"storageLayout": SOLC_LAYOUT})
    assert schema_from_json(schema_to_json(schema)) == schema
