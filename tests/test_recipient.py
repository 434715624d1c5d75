import pytest

from alias_relay.errors import SMTPError
from alias_relay.recipient import is_private, validate_recipient

PRIVATE = "me@private.example"


@pytest.mark.parametrize("recipient", ["ran-dom@example.com", "random@example.com", "a_b@gw.example"])
def test_outside_sender_plain_gateway_addresses_accepted(recipient):
    validate_recipient("carol@external.org", recipient, PRIVATE)


@pytest.mark.parametrize("recipient", ["random#bad", "ran.dom@example.com", "@example.com", "random@", ""])
def test_malformed_recipient_rejected(recipient):
    with pytest.raises(SMTPError) as excinfo:
        validate_recipient("carol@external.org", recipient, PRIVATE)
    assert excinfo.value.code == 550
    assert excinfo.value.enhanced_code == (5, 1, 0)
    assert str(excinfo.value) == "550 5.1.0 Invalid recipient"


def test_private_sender_writing_to_alias_accepted():
    validate_recipient(PRIVATE, "alice_at_example_com_outsideguy@gw.example", PRIVATE)


def test_marker_only_counts_for_private_sender():
    # The local-part regex does not allow dots; only the private mailbox skips it.
    alias = "first.last_at_x_com_bob@gw.example"
    validate_recipient(PRIVATE, alias, PRIVATE)
    with pytest.raises(SMTPError):
        validate_recipient("carol@external.org", alias, PRIVATE)


def test_is_private_is_case_insensitive():
    assert is_private("Me@Private.Example", PRIVATE)
    assert not is_private("me@private.example", "")
    assert not is_private("you@private.example", PRIVATE)
