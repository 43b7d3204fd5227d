"""
Unit Tests for Message Personalisation and Batching

Tests contact placeholder substitution and recipient chunking.
"""

import pytest

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from microservices.campaign_service.batch_dispatcher import chunk, substitute_variables


class TestSubstituteVariables:
    """Tests for {{placeholder}} substitution"""

    def test_camel_and_snake_case_names(self, contact):
        template = "Hi {{firstName}} {{last_name}} from {{company}}"

        assert substitute_variables(template, contact) == (
            "Hi Ada Lovelace from Analytical Engines"
        )

    def test_whitespace_inside_braces(self, contact):
        assert substitute_variables("{{ email }}", contact) == "ada@example.com"

    def test_missing_value_becomes_empty(self, factory):
        contact = factory.make_contact("usr_unit", first_name=None)

        assert substitute_variables("Hi {{firstName}}!", contact) == "Hi !"

    def test_unknown_placeholder_untouched(self, contact):
        assert substitute_variables("Code {{coupon}}", contact) == "Code {{coupon}}"

    @pytest.mark.parametrize("template", [None, ""])
    def test_empty_template(self, contact, template):
        assert substitute_variables(template, contact) == ""


class TestChunk:
    """Tests for splitting recipients into batches"""

    def test_even_split(self):
        assert chunk([1, 2, 3, 4], 2) == [[1, 2], [3, 4]]

    def test_last_batch_is_partial(self):
        assert chunk(list(range(25)), 10)[-1] == list(range(20, 25))

    def test_empty_input(self):
        assert chunk([], 50) == []

    @pytest.mark.parametrize("size", [0, -1])
    def test_invalid_size(self, size):
        with pytest.raises(ValueError):
            chunk([1, 2], size)
