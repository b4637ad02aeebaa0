from key_values import KeyValueStore


def test_set_get_remove():
    kv = KeyValueStore()
    kv.set_value("MeetNote", "Final day")
    assert kv.get_value("MeetNote") == "Final day"
    assert kv.has_key("MeetNote")
    assert kv.remove_key("MeetNote") is True
    assert kv.remove_key("MeetNote") is False
    assert kv.get_value("MeetNote") is None


def test_blank_value_removes_key():
    kv = KeyValueStore()
    kv.set_value("Sponsor", "Local Bakery")
    kv.set_value("Sponsor", "   ")
    assert not kv.has_key("Sponsor")
    kv.set_value("Sponsor", "Local Bakery")
    kv.set_value("Sponsor", None)
    assert kv.all_values() == {}


def test_all_values_is_a_copy():
    kv = KeyValueStore()
    kv.set_value("a", "1")
    values = kv.all_values()
    values["b"] = "2"
    assert kv.all_values() == {"a": "1"}
