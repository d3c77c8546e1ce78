import soundscript


def test_public_reexports_are_accessible() -> None:
    for name in soundscript.__all__:
        assert getattr(soundscript, name) is not None
    assert soundscript.__version__ == "0.1.0"
    assert not hasattr(soundscript, "_configure_logging")
