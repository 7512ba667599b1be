"""
Tests for the byte sanitizer.

Covers encodings, BOMs, control characters, character references,
chunk boundaries and the failure kinds.
"""
import codecs

import pytest
from lxml import etree

from tally_xml_importer.errors import SanitationError, SanitationErrorKind
from tally_xml_importer.sanitizer import (
    CharacterScrubber,
    SanitizeReport,
    XmlSanitizer,
    describe_head,
    detect_encoding,
    sanitize,
    sanitize_bytes,
    sanitize_xml,
)

FORBIDDEN_BYTES = set(range(0x00, 0x09)) | {0x0B, 0x0C} | set(range(0x0E, 0x20))

SAMPLE = (
    '<?xml version="1.0" encoding="UTF-8"?>\n'
    "<ENVELOPE><BODY>"
    "<TALLYMESSAGE><VOUCHER><GUID>g-1</GUID>"
    "<NARRATION>Paid ₹500 to M/s A & B\x04 &#4;&#x1F; ok&#13;</NARRATION>"
    "</VOUCHER></TALLYMESSAGE>"
    "</BODY></ENVELOPE>\n"
)


class TestCharacterRules:
    """Tests for the single-pass character scrubber."""

    def test_removes_control_chars(self):
        """Test that raw C0 control characters are removed."""
        result = sanitize_xml("a\x00b\x01c\x08d\x0be\x0cf\x1fg")
        assert result == "abcdefg"

    def test_keeps_whitespace_controls(self):
        """Test that tab, newline and carriage return survive."""
        assert sanitize_xml("a\tb\nc\rd") == "a\tb\nc\rd"

    def test_removes_forbidden_char_refs(self):
        """Test that references to forbidden code points are removed."""
        assert sanitize_xml("x&#4;y") == "xy"
        assert sanitize_xml("x&#x1F;y") == "xy"
        assert sanitize_xml("x&#0004;y") == "xy"
        assert sanitize_xml("x&#xFFFE;y") == "xy"

    def test_removes_unterminated_forbidden_ref(self):
        """Test that a forbidden reference without ';' is removed too."""
        assert sanitize_xml("x&#x0004 y") == "x y"

    def test_keeps_allowed_char_refs(self):
        """Test that legal references are left alone."""
        assert sanitize_xml("a&#13;b&#10;c&#38;d&#x41;") == "a&#13;b&#10;c&#38;d&#x41;"

    def test_terminates_allowed_ref(self):
        """Test that an allowed reference missing its ';' gets one."""
        assert sanitize_xml("&#65 B") == "&#65; B"

    def test_escapes_bare_ampersands(self):
        """Test that unescaped ampersands are fixed."""
        assert sanitize_xml("<name>A & B</name>") == "<name>A &amp; B</name>"
        assert sanitize_xml("&amp; &lt; &gt; &apos; &quot;") == "&amp; &lt; &gt; &apos; &quot;"

    def test_ampersand_escaping_can_be_disabled(self):
        """Test that bare ampersands are kept when escaping is off."""
        assert sanitize_xml("A & B", escape_ampersands=False) == "A & B"

    def test_removes_noncharacters(self):
        """Test that U+FFFE and U+FFFF are removed."""
        assert sanitize_xml("a\ufffeb\uffffc") == "abc"

    def test_report_counts(self):
        """Test that every rule is counted."""
        report = SanitizeReport()
        CharacterScrubber(report).feed("\x00&#4;A & B&#65 ", final=True)
        assert report.control_chars_removed == 1
        assert report.char_refs_removed == 1
        assert report.ampersands_escaped == 1
        assert report.char_refs_terminated == 1
        assert report.changes == 4

    def test_cdata_left_as_written(self):
        """Test that ampersands and references inside CDATA are not rewritten."""
        xml = "<N><![CDATA[A & B &#4; <x>]]> & C</N>"
        assert sanitize_xml(xml) == "<N><![CDATA[A & B &#4; <x>]]> &amp; C</N>"

    def test_comment_left_as_written(self):
        assert sanitize_xml("<!-- R & D -->&") == "<!-- R & D -->&amp;"

    def test_controls_removed_inside_cdata(self):
        report = SanitizeReport()
        out = CharacterScrubber(report).feed("<![CDATA[a\x04b\ufffe]]>", final=True)
        assert out == "<![CDATA[ab]]>"
        assert report.control_chars_removed == 1
        assert report.noncharacters_removed == 1

    def test_unclosed_cdata_at_end_of_input(self):
        assert sanitize_xml("<a><![CDATA[x & y") == "<a><![CDATA[x & y"

    def test_output_parses_with_cdata(self):
        raw = "<a><![CDATA[Tom & Jerry]]>&#4;<b>R & D</b></a>"
        root = etree.fromstring(sanitize_xml(raw).encode("utf-8"))
        assert root.text == "Tom & Jerry"
        assert root.find("b").text == "R & D"


class TestScrubberChunks:
    """Tests for references and CDATA sections split across chunk boundaries."""

    def test_split_forbidden_ref(self):
        """Test that a forbidden reference split in two is still removed."""
        scrubber = CharacterScrubber()
        out = scrubber.feed("abc &#") + scrubber.feed("4; def") + scrubber.flush()
        assert out == "abc  def"

    def test_split_entity_not_double_escaped(self):
        """Test that '&amp;' split across chunks is not escaped again."""
        scrubber = CharacterScrubber()
        out = scrubber.feed("A &am") + scrubber.feed("p; B") + scrubber.flush()
        assert out == "A &amp; B"

    def test_trailing_ampersand_escaped_on_flush(self):
        """Test that a held-back '&' at the end of input is escaped."""
        scrubber = CharacterScrubber()
        out = scrubber.feed("A &") + scrubber.flush()
        assert out == "A &amp;"

    @pytest.mark.parametrize("size", [1, 2, 3, 5, 8])
    def test_cdata_split_across_chunks(self, size):
        """Test that a CDATA section split anywhere keeps its content verbatim."""
        text = "<N>x & y<![CDATA[A & B &#4;]]>&#4;<!-- c & d --></N>"
        scrubber = CharacterScrubber()
        out = "".join(scrubber.feed(text[i:i + size]) for i in range(0, len(text), size)) + scrubber.flush()
        assert out == sanitize_xml(text)
        assert out == "<N>x &amp; y<![CDATA[A & B &#4;]]><!-- c & d --></N>"

    def test_open_cdata_held_until_closed(self):
        scrubber = CharacterScrubber()
        assert scrubber.feed("ab<![CDATA[x &") == "ab"
        assert scrubber.feed("#4;]]>") == "<![CDATA[x &#4;]]>"


class TestDetectEncoding:
    """Tests for BOM and UTF-16 sniffing."""

    def test_utf8_bom(self):
        assert detect_encoding(codecs.BOM_UTF8 + b"<a/>") == ("utf-8", 3)

    def test_utf16_boms(self):
        assert detect_encoding(codecs.BOM_UTF16_LE + "<".encode("utf-16-le")) == ("utf-16-le", 2)
        assert detect_encoding(codecs.BOM_UTF16_BE + "<".encode("utf-16-be")) == ("utf-16-be", 2)

    def test_bomless_utf16(self):
        assert detect_encoding("<a/>".encode("utf-16-le")) == ("utf-16-le", 0)
        assert detect_encoding("<a/>".encode("utf-16-be")) == ("utf-16-be", 0)

    def test_plain_utf8(self):
        assert detect_encoding(b"<a/>") == ("utf-8", 0)

    def test_describe_head_flags_nul_bytes(self):
        """Test that the file analysis shows non-printables as hex."""
        info = describe_head(b"<a>\x00\x01</a>")
        assert info["null_bytes"] == 1
        assert "[00][01]" in info["preview"]


class TestSanitizeBytes:
    """Tests for the in-memory strategy."""

    def test_output_has_no_forbidden_bytes(self):
        clean, report = sanitize_bytes(SAMPLE.encode("utf-8"))
        assert not FORBIDDEN_BYTES & set(clean)
        assert b"&#13;" in clean
        assert b"A &amp; B" in clean
        assert report.encoding == "utf-8"

    def test_output_parses(self):
        clean, _ = sanitize_bytes(SAMPLE.encode("utf-8"))
        root = etree.fromstring(clean)
        assert root.tag == "ENVELOPE"

    def test_utf8_bom_removed(self):
        clean, report = sanitize_bytes(codecs.BOM_UTF8 + b"<a>1</a>")
        assert clean == b"<a>1</a>"
        assert report.bom_removed

    def test_utf16_converted_and_declaration_rewritten(self):
        raw = codecs.BOM_UTF16_LE + SAMPLE.replace("UTF-8", "UTF-16").encode("utf-16-le")
        clean, report = sanitize_bytes(raw)
        assert clean.startswith(b'<?xml version="1.0" encoding="UTF-8"?>')
        assert report.encoding == "utf-16-le"
        assert report.declaration_rewritten
        assert "₹500".encode("utf-8") in clean
        etree.fromstring(clean)

    def test_leading_junk_trimmed(self):
        clean, report = sanitize_bytes(b"garbage\r\n<a/>")
        assert clean == b"<a/>"
        assert report.leading_trimmed == len("garbage\r\n")

    def test_no_xml_start(self):
        with pytest.raises(SanitationError) as exc:
            sanitize_bytes(b"this is not xml at all")
        assert exc.value.kind is SanitationErrorKind.NO_XML_START

    def test_empty_input(self):
        for raw in (b"", b"   \n\t"):
            with pytest.raises(SanitationError) as exc:
                sanitize_bytes(raw)
            assert exc.value.kind is SanitationErrorKind.EMPTY_INPUT

    def test_invalid_utf8_strict(self):
        with pytest.raises(SanitationError) as exc:
            sanitize_bytes(b"<a>\xff\xfe\xfd</a>")
        assert exc.value.kind is SanitationErrorKind.CONVERSION_FAILED

    def test_invalid_utf8_lenient(self):
        clean, _ = sanitize_bytes(b"<a>\xff</a>", strict=False)
        assert clean == "<a>\ufffd</a>".encode("utf-8")


class TestXmlSanitizer:
    """Tests for strategy selection and the chunked strategy."""

    def test_missing_input(self, tmp_path):
        with pytest.raises(SanitationError) as exc:
            XmlSanitizer().sanitize(tmp_path / "missing.xml", tmp_path / "out.xml")
        assert exc.value.kind is SanitationErrorKind.INPUT_NOT_FOUND

    def test_small_file_in_memory(self, write_xml, tmp_path):
        source = write_xml(SAMPLE)
        output = tmp_path / "clean.xml"
        document = sanitize(source, output)
        assert document.path == output
        assert document.report.mode == "memory"
        assert output.read_bytes() == sanitize_bytes(SAMPLE.encode("utf-8"))[0]
        assert not (tmp_path / "clean.xml.part").exists()

    def test_large_file_streams(self, write_xml, tmp_path):
        source = write_xml(SAMPLE)
        document = XmlSanitizer(size_threshold=0, chunk_size=64).sanitize(source, tmp_path / "clean.xml")
        assert document.report.mode == "chunked"
        assert document.report.chunks > 1

    def test_memory_failure_falls_back_to_chunks(self, write_xml, tmp_path):
        source = write_xml(b"<a>caf\xe9</a>")
        document = sanitize(source, tmp_path / "clean.xml")
        assert document.report.mode == "chunked"
        assert (tmp_path / "clean.xml").read_bytes() == "<a>caf\ufffd</a>".encode("utf-8")

    @pytest.mark.parametrize("chunk_size", [1, 2, 3, 7, 64])
    def test_chunk_boundaries_match_memory(self, write_xml, tmp_path, chunk_size):
        """Test that tiny chunks produce the same bytes as one pass."""
        source = write_xml(SAMPLE)
        output = tmp_path / "clean.xml"
        XmlSanitizer(size_threshold=0, chunk_size=chunk_size).sanitize(source, output)
        assert output.read_bytes() == sanitize_bytes(SAMPLE.encode("utf-8"))[0]

    @pytest.mark.parametrize("chunk_size", [1, 2, 3, 7, 64])
    def test_utf16_chunk_boundaries(self, write_xml, tmp_path, chunk_size):
        """Test that UTF-16 code units and the declaration survive chunking."""
        raw = codecs.BOM_UTF16_LE + SAMPLE.replace("UTF-8", "UTF-16").encode("utf-16-le")
        source = write_xml(raw)
        output = tmp_path / "clean.xml"
        document = XmlSanitizer(size_threshold=0, chunk_size=chunk_size).sanitize(source, output)
        assert document.report.declaration_rewritten
        assert output.read_bytes() == sanitize_bytes(raw)[0]

    @pytest.mark.parametrize("bom,codec", [(codecs.BOM_UTF8, "utf-8"), (codecs.BOM_UTF16_BE, "utf-16-be")])
    def test_bom_split_over_single_byte_reads(self, write_xml, tmp_path, bom, codec):
        """Test that a BOM read one byte at a time is still recognised."""
        raw = bom + SAMPLE.replace("UTF-8", codec.upper()).encode(codec)
        output = tmp_path / "clean.xml"
        document = XmlSanitizer(size_threshold=0, chunk_size=1).sanitize(write_xml(raw), output)
        assert document.report.bom_removed
        assert document.report.encoding == codec
        assert output.read_bytes() == sanitize_bytes(raw)[0]

    def test_streaming_no_xml_start(self, write_xml, tmp_path):
        source = write_xml(b"x" * 60_000)
        with pytest.raises(SanitationError) as exc:
            XmlSanitizer(size_threshold=0, chunk_size=1024).sanitize(source, tmp_path / "clean.xml")
        assert exc.value.kind is SanitationErrorKind.NO_XML_START
        assert not (tmp_path / "clean.xml").exists()
        assert not (tmp_path / "clean.xml.part").exists()
