from datetime import datetime, timedelta, timezone

import pytest

from pikup.db.codec import (
    DocumentCodec,
    decode,
    doc_id_from_name,
    encode,
    format_timestamp,
    parse_timestamp,
)

strict = DocumentCodec(parse_json_strings=False)


@pytest.mark.parametrize("value", [
    None,
    "hello",
    "",
    0,
    42,
    -7,
    3.5,
    -0.25,
    True,
    False,
    datetime(2024, 1, 1, 8, 30, 15, 123000, tzinfo=timezone.utc),
    datetime(2024, 1, 1, 8, 30, 15, 123456, tzinfo=timezone.utc),
    datetime(2024, 1, 1, 3, 30, 15, 1, tzinfo=timezone(timedelta(hours=-5))),
])
def test_primitives_round_trip(value):
    assert decode(encode(value)) == value


def test_wire_markers():
    assert encode("x") == {"stringValue": "x"}
    assert encode(5) == {"integerValue": "5"}
    assert encode(5.0) == {"integerValue": "5"}
    assert encode(5.5) == {"doubleValue": 5.5}
    assert encode(True) == {"booleanValue": True}
    assert encode(None) == {"nullValue": None}
    assert encode(datetime(2024, 1, 1, tzinfo=timezone.utc)) == {"timestampValue": "2024-01-01T00:00:00.000Z"}
    assert encode([]) == {"arrayValue": {"values": []}}


def test_bool_is_not_encoded_as_integer():
    assert "booleanValue" in encode(False)
    assert "integerValue" not in encode(True)


def test_one_level_object_round_trips():
    value = {"address": "1 Main St", "floor": 3, "elevator": False, "fee": 2.5, "note": None}
    assert encode(value)["mapValue"]["fields"]["floor"] == {"integerValue": "3"}
    assert decode(encode(value)) == value


def test_array_of_objects_round_trips():
    value = [1, "two", {"k": True, "n": 1.5}]
    encoded = encode(value)
    assert encoded["arrayValue"]["values"][2] == {
        "mapValue": {"fields": {"k": {"booleanValue": True}, "n": {"doubleValue": 1.5}}}
    }
    assert decode(encoded) == value


def test_nesting_beyond_bound_is_stringified():
    value = {"outer": {"inner": 1}, "list": [1, 2]}
    fields = encode(value)["mapValue"]["fields"]
    assert fields["outer"] == {"stringValue": '{"inner": 1}'}
    assert fields["list"] == {"stringValue": "[1, 2]"}
    # an explicit-type reader sees the flattened strings
    assert strict.decode_value(encode(value)) == {"outer": '{"inner": 1}', "list": "[1, 2]"}


def test_nested_arrays_inside_arrays_are_stringified():
    encoded = encode([[1, 2], {"deep": {"x": 1}}])
    assert encoded["arrayValue"]["values"][0] == {"stringValue": "[1, 2]"}
    assert strict.decode_value(encoded) == ["[1, 2]", {"deep": '{"x": 1}'}]


def test_json_looking_strings_are_parsed_by_default():
    assert decode({"stringValue": '{"a": 1}'}) == {"a": 1}
    assert decode({"stringValue": "[1, 2]"}) == [1, 2]
    assert decode({"stringValue": "[not json"}) == "[not json"
    assert decode({"stringValue": "plain {text}"}) == "plain {text}"


def test_strict_codec_keeps_strings():
    assert strict.decode_value({"stringValue": '{"a": 1}'}) == '{"a": 1}'


def test_unencodable_values_fall_back_to_strings():
    class Thing:
        def __str__(self):
            return "thing"

    assert encode(Thing()) == {"stringValue": "thing"}
    assert encode({"t": Thing()}) == {"mapValue": {"fields": {"t": {"stringValue": "thing"}}}}


def test_encode_update_nests_dotted_paths():
    body = DocumentCodec().encode_update({
        "status": "pickedUp",
        "driverLocation.latitude": 33.7,
        "driverLocation.longitude": -84.4,
    })
    assert body == {"fields": {
        "status": {"stringValue": "pickedUp"},
        "driverLocation": {"mapValue": {"fields": {
            "latitude": {"doubleValue": 33.7},
            "longitude": {"doubleValue": -84.4},
        }}},
    }}


def test_decode_document_shapes():
    codec = DocumentCodec()
    assert codec.decode_document({"name": "projects/p/databases/(default)/documents/users/u1"}) == {}
    assert codec.decode_document({"fields": {"a": {"integerValue": "1"}}}) == {"a": 1}
    assert codec.decode_document({"a": {"booleanValue": True}}) == {"a": True}
    assert codec.decode_document(None) == {}


def test_decode_extra_markers():
    assert decode({"geoPointValue": {"latitude": 1.5, "longitude": 2.5}}) == {"latitude": 1.5, "longitude": 2.5}
    assert decode({"referenceValue": "projects/p/x"}) == "projects/p/x"
    assert decode({"mapValue": {}}) == {}
    assert decode({"arrayValue": {}}) == []


def test_doc_id_from_name():
    assert doc_id_from_name("projects/p/databases/(default)/documents/pickupRequests/pickup_1_abc") == "pickup_1_abc"


def test_timestamps():
    assert format_timestamp(datetime(2024, 5, 1, 9, 0, 0, 999000)) == "2024-05-01T09:00:00.999Z"
    assert format_timestamp(datetime(2024, 5, 1, 9, 0, 0, 999999)) == "2024-05-01T09:00:00.999999Z"
    assert format_timestamp(datetime(2024, 5, 1, 9, 0, 0, 1500)) == "2024-05-01T09:00:00.001500Z"
    parsed = parse_timestamp("2024-05-01T09:00:00.123456789Z")
    assert parsed == datetime(2024, 5, 1, 9, 0, 0, 123456, tzinfo=timezone.utc)
    assert parse_timestamp("2024-05-01T09:00:00Z").tzinfo is not None
    assert parse_timestamp(None) is None


def test_naive_datetimes_are_stored_as_utc():
    naive = datetime(2024, 1, 1, 8, 30, 15, 123456)
    decoded = decode(encode(naive))
    assert decoded == naive.replace(tzinfo=timezone.utc)
    assert decoded.tzinfo is not None


def test_clock_values_survive_a_document_round_trip():
    now = datetime.now(timezone.utc)
    data = {"createdAt": now, "pickup": {"at": now}}
    assert strict.decode_document(strict.encode_document(data)) == data
