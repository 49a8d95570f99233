"""Test source preprocessing (shebang stripping and trimming)."""
import pytest
import sys
from pathlib import Path

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from luarun.runtime.preprocess import prepare_source


class TestPrepareSource:
    """Tests for prepare_source."""

    def test_strips_shebang_line(self):
        """Test the interpreter line is removed and the rest kept."""
        assert prepare_source("#!/usr/bin/env myscript\nreturn 1+1") == "return 1+1"

    def test_keeps_remaining_lines_intact(self):
        """Test only the first line is removed from a multi-line script."""
        source = "#!/usr/bin/lua\nlocal x = 1\n\nreturn x"
        assert prepare_source(source) == "local x = 1\n\nreturn x"

    def test_shebang_only(self):
        """Test a file holding only a shebang line becomes empty."""
        assert prepare_source("#!/usr/bin/lua") == ""
        assert prepare_source("#!/usr/bin/lua\n") == ""

    def test_shebang_after_leading_whitespace(self):
        """Test leading whitespace is trimmed before the shebang check."""
        assert prepare_source("\n\n  #!/bin/lua\nreturn 1") == "return 1"

    def test_shebang_path_normalizes_crlf(self):
        """Test CRLF endings become LF once the shebang line is dropped."""
        source = "#!/bin/lua\r\nlocal a = 1\r\nreturn a\r\n"
        assert prepare_source(source) == "local a = 1\nreturn a"

    def test_plain_source_keeps_line_endings(self):
        """Test text without a shebang keeps its CRLF endings."""
        source = "local a = 1\r\nreturn a"
        assert prepare_source(source) == source

    @pytest.mark.parametrize("source,expected", [
        ("return 1", "return 1"),
        ("  return 1  \n", "return 1"),
        ("\t\nprint('x')\n\n", "print('x')"),
        ("", ""),
        ("   \n\t ", ""),
    ])
    def test_trims_plain_source(self, source, expected):
        """Test non-shebang input is only trimmed."""
        assert prepare_source(source) == expected

    def test_hash_without_bang_is_not_a_shebang(self):
        """Test a lone '#' first character is left for the lexer."""
        assert prepare_source("#x\nreturn 1") == "#x\nreturn 1"

    def test_strip_shebang_disabled(self):
        """Test the shebang step can be switched off."""
        source = "#!/bin/lua\nreturn 1"
        assert prepare_source(source, strip_shebang=False) == source
