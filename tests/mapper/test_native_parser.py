# tests/mapper/test_native_parser.py

import copy
from datetime import datetime
from decimal import Decimal

import pytest
from bson import Decimal128, Int64, ObjectId

from mongo_mapper.base.exceptions import InvalidStructureException
from mongo_mapper.mapper.generator import NativeDocumentGenerator
from mongo_mapper.mapper.parser import NativeDocumentParser, classify
from mongo_mapper.mapper.tokens import Token

OID = ObjectId("5f1e1a1b2c3d4e5f60718293")


@pytest.fixture
def document():
    return {
        "a": 1,
        "b": ["x", None, True],
        "c": {"d": 2.5},
        "e": OID,
    }


def test_token_sequence_follows_document_order(document):
    tokens = list(NativeDocumentParser(document))
    assert tokens == [
        Token.START_OBJECT,
        Token.FIELD_NAME,
        Token.VALUE_NUMBER_INT,
        Token.FIELD_NAME,
        Token.START_ARRAY,
        Token.VALUE_STRING,
        Token.VALUE_NULL,
        Token.VALUE_TRUE,
        Token.END_ARRAY,
        Token.FIELD_NAME,
        Token.START_OBJECT,
        Token.FIELD_NAME,
        Token.VALUE_NUMBER_FLOAT,
        Token.END_OBJECT,
        Token.FIELD_NAME,
        Token.VALUE_EMBEDDED_OBJECT,
        Token.END_OBJECT,
    ]


def test_names_and_scalar_accessors(document):
    parser = NativeDocumentParser(document)
    assert parser.next_token() is Token.START_OBJECT
    assert parser.next_token() is Token.FIELD_NAME
    assert parser.current_name == "a"
    assert parser.get_text() == "a"
    assert parser.next_token() is Token.VALUE_NUMBER_INT
    assert parser.current_name == "a"
    assert parser.get_number_value() == 1
    assert parser.next_value() is Token.START_ARRAY
    assert parser.current_name == "b"


def test_embedded_object_is_returned_as_is(document):
    parser = NativeDocumentParser(document)
    for token in parser:
        if token is Token.VALUE_EMBEDDED_OBJECT:
            assert parser.get_embedded_object() is OID
            assert parser.current_name == "e"
            break
    else:
        pytest.fail("No embedded object token")


def test_sink_and_source_reproduce_the_same_document(document):
    parser = NativeDocumentParser(document)
    parser.next_token()
    gen = NativeDocumentGenerator()
    gen.copy_current_structure(parser)
    assert gen.document == document
    assert gen.document["e"] is OID


def test_written_tokens_are_read_back_in_order():
    gen = NativeDocumentGenerator()
    gen.write_start_object()
    gen.write_field_name("list")
    gen.write_start_array()
    gen.write_number(1)
    gen.write_string("two")
    gen.write_end_array()
    gen.write_field_name("when")
    gen.write_object(datetime(2024, 1, 2))
    gen.write_end_object()

    parser = NativeDocumentParser(gen.document)
    events = []
    for token in parser:
        if token is Token.FIELD_NAME:
            events.append((token, parser.current_name))
        elif token.is_scalar_value:
            events.append((token, parser.get_embedded_object()))
        else:
            events.append((token, None))
    assert events == [
        (Token.START_OBJECT, None),
        (Token.FIELD_NAME, "list"),
        (Token.START_ARRAY, None),
        (Token.VALUE_NUMBER_INT, 1),
        (Token.VALUE_STRING, "two"),
        (Token.END_ARRAY, None),
        (Token.FIELD_NAME, "when"),
        (Token.VALUE_EMBEDDED_OBJECT, datetime(2024, 1, 2)),
        (Token.END_OBJECT, None),
    ]


def test_sub_parser_is_scoped_to_current_subtree(document):
    parser = NativeDocumentParser(document)
    parser.next_token()
    parser.next_token()  # a
    parser.next_token()
    parser.next_token()  # b
    assert parser.next_token() is Token.START_ARRAY

    sub = parser.sub_parser()
    assert sub.current_token is Token.START_ARRAY
    assert sub.current_name == "b"
    assert list(sub) == [Token.VALUE_STRING, Token.VALUE_NULL, Token.VALUE_TRUE, Token.END_ARRAY]

    # the outer parser has not moved
    assert parser.current_token is Token.START_ARRAY
    parser.skip_children()
    assert parser.current_token is Token.END_ARRAY
    assert parser.next_token() is Token.FIELD_NAME
    assert parser.current_name == "c"


def test_parsers_share_a_document_without_modifying_it(document):
    snapshot = copy.deepcopy(document)
    first = NativeDocumentParser(document)
    second = NativeDocumentParser(document)
    interleaved = []
    for _ in range(6):
        interleaved.append((first.next_token(), second.next_token()))
    assert all(a is b for a, b in interleaved)
    assert document == snapshot


def test_scalar_root():
    parser = NativeDocumentParser("text")
    assert parser.next_token() is Token.VALUE_STRING
    assert parser.get_text() == "text"
    assert parser.next_token() is None
    assert parser.closed


def test_driver_numbers_are_unwrapped():
    parser = NativeDocumentParser({"long": Int64(7), "dec": Decimal128("1.25")})
    parser.next_token()
    parser.next_value()
    assert parser.current_token is Token.VALUE_NUMBER_INT
    assert parser.get_number_value() == 7
    assert type(parser.get_number_value()) is int
    parser.next_value()
    assert parser.current_token is Token.VALUE_NUMBER_FLOAT
    assert parser.get_number_value() == Decimal("1.25")


def test_number_accessor_on_non_number_fails():
    parser = NativeDocumentParser("text")
    parser.next_token()
    with pytest.raises(InvalidStructureException):
        parser.get_number_value()


def test_peek_does_not_consume(document):
    parser = NativeDocumentParser(document)
    assert parser.peek_token() is Token.START_OBJECT
    assert parser.next_token() is Token.START_OBJECT
    assert parser.peek_token() is Token.FIELD_NAME


@pytest.mark.parametrize(
    "value, expected",
    [
        (None, Token.VALUE_NULL),
        (False, Token.VALUE_FALSE),
        ("s", Token.VALUE_STRING),
        (3, Token.VALUE_NUMBER_INT),
        (3.5, Token.VALUE_NUMBER_FLOAT),
        ({}, Token.START_OBJECT),
        ([], Token.START_ARRAY),
        (OID, Token.VALUE_EMBEDDED_OBJECT),
        (b"\x00", Token.VALUE_EMBEDDED_OBJECT),
    ],
)
def test_classify(value, expected):
    assert classify(value) is expected
