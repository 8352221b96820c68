"""Tests for document path expressions."""

import pytest

from hubstore.core.jsonpath import compile_path, evaluate
from hubstore.exceptions import MalformedPathError, PathNotFoundError

DOC = {"name": "Hello World", "items": [{"id": 1}, {"id": 2}], "odd key": True}


class TestCompile:
    @pytest.mark.parametrize(
        "path,steps",
        [
            ("", []),
            ("$", []),
            ("$.name", ["name"]),
            ("name", ["name"]),
            ("$.items[1].id", ["items", 1, "id"]),
            ("$['odd key']", ["odd key"]),
            ('$["odd key"]', ["odd key"]),
        ],
    )
    def test_steps(self, path, steps):
        assert compile_path(path) == steps

    @pytest.mark.parametrize("path", ["$.", "$..name", "$[x]", "$.items[", "$.a b"])
    def test_malformed(self, path):
        with pytest.raises(MalformedPathError):
            compile_path(path)


class TestEvaluate:
    def test_whole_document(self):
        assert evaluate(DOC, "") == DOC
        assert evaluate(DOC, "$") == DOC

    def test_member(self):
        assert evaluate(DOC, "$.name") == "Hello World"

    def test_index(self):
        assert evaluate(DOC, "$.items[1].id") == 2

    def test_missing_member(self):
        with pytest.raises(PathNotFoundError):
            evaluate(DOC, "$.nope")

    def test_index_out_of_range(self):
        with pytest.raises(PathNotFoundError):
            evaluate(DOC, "$.items[5]")

    def test_index_into_object(self):
        with pytest.raises(PathNotFoundError):
            evaluate(DOC, "$.name[0]")
