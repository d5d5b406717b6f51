"""
Unit tests for timing metadata and output records
"""

import orjson
import pytest

from rpcbench.errors import ProtocolError
from rpcbench.protocol import parse_response
from rpcbench.records import Metadata, MonotonicClock, OutputRecord, parse_output_record


def _metadata(**overrides):
    fields = dict(
        request={"jsonrpc": "2.0", "method": "m", "id": 1},
        server="127.0.0.1:9000",
        start_time_us=100,
        end_time_us=250,
    )
    fields.update(overrides)
    return Metadata(**fields)


class TestMonotonicClock:
    def test_elapsed_is_monotonic(self):
        """Test successive readings never go backwards"""
        clock = MonotonicClock()
        first = clock.elapsed_us()
        second = clock.elapsed_us()

        assert 0 <= first <= second


class TestMetadata:
    """Test Metadata accounting and serialization"""

    def test_latency(self):
        """Test latency is end minus start"""
        assert _metadata().latency_us == 150

    def test_request_byte_size_prefers_sent_text(self):
        """Test byte accounting uses the exact text that was sent"""
        text = '{"jsonrpc": "2.0", "method": "m", "id": 1}'
        metadata = _metadata(request_text=text)

        assert metadata.request_byte_size == len(text)

    def test_request_byte_size_falls_back_to_compact_json(self):
        """Test byte accounting without the sent text re-serializes compactly"""
        metadata = _metadata()

        assert metadata.request_byte_size == len('{"jsonrpc":"2.0","method":"m","id":1}')

    def test_to_dict_omits_original_id_when_unset(self):
        """Test original_id only appears after reassignment"""
        payload = _metadata().to_dict()

        assert payload == {
            "request": {"jsonrpc": "2.0", "method": "m", "id": 1},
            "server": "127.0.0.1:9000",
            "start_time_us": 100,
            "end_time_us": 250,
            "request_byte_size": len('{"jsonrpc":"2.0","method":"m","id":1}'),
        }

    def test_to_dict_includes_original_id(self):
        """Test a reassigned call reports the caller's id"""
        assert _metadata(original_id="caller-1").to_dict()["original_id"] == "caller-1"


class TestOutputRecord:
    """Test OutputRecord serialization and parsing"""

    def test_without_metadata_is_response_text(self):
        """Test a record without metadata prints the response verbatim"""
        text = '{"jsonrpc":"2.0","id":1,"result":null}'
        record = OutputRecord(response=parse_response(text))

        assert record.to_json() == text

    def test_metadata_is_injected(self):
        """Test metadata is added as a member of the response object"""
        record = OutputRecord(
            response=parse_response('{"jsonrpc":"2.0","id":1,"result":2}'),
            metadata=_metadata(),
        )
        value = orjson.loads(record.to_json())

        assert value["result"] == 2
        assert value["metadata"]["start_time_us"] == 100
        assert value["metadata"]["end_time_us"] == 250

    def test_batch_metadata_on_first_element(self):
        """Test a batch response carries metadata on its first element only"""
        record = OutputRecord(
            response=parse_response(
                '[{"jsonrpc":"2.0","id":1,"result":1},{"jsonrpc":"2.0","id":2,"result":2}]'
            ),
            metadata=_metadata(),
        )
        value = orjson.loads(record.to_json())

        assert "metadata" in value[0]
        assert "metadata" not in value[1]

    def test_parse_strips_metadata_from_response_text(self):
        """Test parsed records size the response without the metadata wrapper"""
        original = '{"jsonrpc":"2.0","id":1,"result":2}'
        line = OutputRecord(response=parse_response(original), metadata=_metadata()).to_json()

        record = parse_output_record(line)

        assert record.response.text == original
        assert record.response.byte_size == len(original)
        assert record.metadata is not None
        assert record.metadata.latency_us == 150
        assert record.metadata.server == "127.0.0.1:9000"

    def test_sent_byte_size_survives_round_trip(self):
        """Test a request sent with whitespace is sized the same after parsing"""
        sent = '{ "jsonrpc": "2.0", "method": "m", "id": 1 }'
        line = OutputRecord(
            response=parse_response('{"jsonrpc":"2.0","id":1,"result":null}'),
            metadata=_metadata(request_text=sent),
        ).to_json()

        record = parse_output_record(line)

        assert record.metadata.request_byte_size == len(sent)

    def test_malformed_byte_size(self):
        line = (
            '{"jsonrpc":"2.0","id":1,"result":null,"metadata":{"request":{},"server":"s",'
            '"start_time_us":1,"end_time_us":2,"request_byte_size":"many"}}'
        )

        with pytest.raises(ProtocolError):
            parse_output_record(line)

    def test_parse_without_metadata(self):
        """Test a bare response line parses without metadata"""
        record = parse_output_record('{"jsonrpc":"2.0","id":1,"result":null}\n')

        assert record.metadata is None
        assert record.response.id == 1

    def test_parse_malformed_metadata(self):
        """Test incomplete metadata is reported, not ignored"""
        with pytest.raises(ProtocolError):
            parse_output_record('{"jsonrpc":"2.0","id":1,"result":null,"metadata":{"server":"x"}}')

    def test_parse_invalid_json(self):
        """Test garbage input raises ProtocolError"""
        with pytest.raises(ProtocolError):
            parse_output_record("{oops")
