"""
文本规范化单元测试

测试 ragcore/pipeline/normalizer.py：
- normalize_text
- compute_content_hash
"""

from ragcore.pipeline.normalizer import compute_content_hash, normalize_text


class TestNormalizeText:
    """测试文本规范化"""

    def test_line_endings_collapsed(self):
        """测试换行统一并折叠为空格"""
        assert normalize_text("Hello\r\nWorld\rAgain\n") == "Hello World Again"

    def test_nfkc_fullwidth(self):
        """测试全角字符转半角"""
        assert normalize_text("ＡＢＣ１２３") == "ABC123"

    def test_control_chars_removed(self):
        """测试删除控制字符"""
        assert normalize_text("a\x00b\x07c") == "abc"

    def test_disallowed_symbols_removed(self):
        """测试删除基础标点之外的符号"""
        assert normalize_text("price: $100 & more!") == "price: 100 more!"

    def test_keeps_cjk_and_punctuation(self):
        """测试保留中文和基础标点"""
        assert normalize_text("退款 政策 (v2), 适用: 全部-用户?") == "退款 政策 (v2), 适用: 全部-用户?"

    def test_whitespace_collapsed(self):
        """测试连续空白折叠"""
        assert normalize_text("  a \t\t b   c  ") == "a b c"

    def test_non_string_input(self):
        """测试非字符串输入返回空字符串"""
        assert normalize_text(None) == ""
        assert normalize_text(123) == ""
        assert normalize_text("") == ""


class TestContentHash:
    """测试片段内容哈希"""

    def test_case_and_whitespace_insensitive(self):
        """测试哈希忽略大小写和首尾空白"""
        assert compute_content_hash("  Hello World ") == compute_content_hash("hello world")

    def test_hash_is_sha256_hex(self):
        """测试哈希为 64 位十六进制"""
        digest = compute_content_hash("text")
        assert len(digest) == 64
        int(digest, 16)

    def test_different_content(self):
        """测试不同内容哈希不同"""
        assert compute_content_hash("alpha") != compute_content_hash("beta")
