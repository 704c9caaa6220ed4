import json
import logging

import pytest

from nsclass.engines.loggers import ObjectJsonFormatter, ObjectPrefixingJsonFormatter, \
                                    ObjectPrefixingTextFormatter, ObjectTextFormatter


def test_prefixing_text_formatter_adds_prefixes(ns_record):
    formatter = ObjectPrefixingTextFormatter()
    formatted = formatter.format(ns_record)
    assert formatted == '[namespace1] hello'


def test_prefixing_json_formatter_adds_prefixes(ns_record):
    formatter = ObjectPrefixingJsonFormatter()
    formatted = formatter.format(ns_record)
    decoded = json.loads(formatted)
    assert decoded['message'] == '[namespace1] hello'


def test_prefixing_text_formatter_ignores_unrelated_records(plain_record):
    formatter = ObjectPrefixingTextFormatter()
    formatted = formatter.format(plain_record)
    assert formatted == 'hello'


def test_prefixing_keeps_the_original_record_intact(ns_record):
    formatter = ObjectPrefixingTextFormatter()
    formatter.format(ns_record)
    assert ns_record.msg == 'hello'


def test_regular_text_formatter_omits_prefixes(ns_record):
    formatter = ObjectTextFormatter()
    formatted = formatter.format(ns_record)
    assert formatted == 'hello'


def test_regular_json_formatter_omits_prefixes(ns_record):
    formatter = ObjectJsonFormatter()
    formatted = formatter.format(ns_record)
    decoded = json.loads(formatted)
    assert decoded['message'] == 'hello'


@pytest.mark.parametrize('cls', [ObjectJsonFormatter, ObjectPrefixingJsonFormatter])
@pytest.mark.parametrize('levelno, expected_severity', [
    (0,  'debug'),
    (logging.DEBUG, 'debug'),
    (logging.DEBUG + 1, 'info'),
    (logging.INFO, 'info'),
    (logging.INFO + 1, 'warn'),
    (logging.WARNING, 'warn'),
    (logging.WARNING + 1, 'error'),
    (logging.ERROR, 'error'),
    (logging.ERROR + 1, 'fatal'),
    (logging.FATAL, 'fatal'),
    (999, 'fatal'),
])
def test_json_formatters_add_severity(ns_record, cls, levelno, expected_severity):
    ns_record.levelno = levelno
    ns_record.levelname = 'must-be-irrelevant'
    formatter = cls()
    formatted = formatter.format(ns_record)
    decoded = json.loads(formatted)
    assert decoded['severity'] == expected_severity


@pytest.mark.parametrize('cls', [ObjectJsonFormatter, ObjectPrefixingJsonFormatter])
def test_json_formatters_add_refkey_with_default_key(ns_record, cls):
    formatter = cls()
    formatted = formatter.format(ns_record)
    decoded = json.loads(formatted)
    assert decoded['object'] == {
        'apiVersion': 'v1',
        'kind': 'Namespace',
        'name': 'namespace1',
    }
    assert 'k8s_ref' not in decoded


@pytest.mark.parametrize('cls', [ObjectJsonFormatter, ObjectPrefixingJsonFormatter])
def test_json_formatters_add_refkey_with_custom_key(ns_record, cls):
    formatter = cls(refkey='k8s-obj')
    formatted = formatter.format(ns_record)
    decoded = json.loads(formatted)
    assert 'object' not in decoded
    assert decoded['k8s-obj'] == {
        'apiVersion': 'v1',
        'kind': 'Namespace',
        'name': 'namespace1',
    }


def test_json_formatter_skips_refkey_for_unrelated_records(plain_record):
    formatter = ObjectJsonFormatter()
    formatted = formatter.format(plain_record)
    decoded = json.loads(formatted)
    assert decoded['message'] == 'hello'
    assert 'object' not in decoded
