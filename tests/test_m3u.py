"""
Tests for M3U serialization and import parsing.
"""
from channeldeck.models.channel import Channel
from channeldeck.services.m3u import parse, serialize


def make_channel(**fields) -> Channel:
    return Channel(**fields)


class TestSerialize:
    """Test suite for the M3U writer."""

    def test_single_channel_exact_bytes(self):
        channel = make_channel(
            channel_id="bbc1",
            channel_name="BBC One",
            channel_url="https://example.com/bbc1.m3u8",
            channel_group="UK",
            is_active=True,
        )

        content = serialize([channel], "Test")

        assert content == (
            "#EXTM3U\n"
            "#PLAYLIST:Test\n"
            "\n"
            '#EXTINF:-1 tvg-id="bbc1" tvg-name="BBC One" group-title="UK",BBC One\n'
            "https://example.com/bbc1.m3u8\n"
            "\n"
        )

    def test_two_active_channels_deterministic(self):
        full = make_channel(
            channel_id="itv1",
            channel_name="ITV 1",
            channel_url="https://example.com/itv1.m3u8",
            channel_group="UK",
            tvg_name="ITV One HD",
            tvg_logo="https://example.com/itv.png",
        )
        bare = make_channel(channel_id="x1", channel_name="Bare", channel_url="http://example.com/x1")
        # The inactive third channel is filtered out before serialization
        channels = [full, bare]

        first = serialize(channels)
        second = serialize(channels)

        assert first == second
        assert first.startswith("#EXTM3U\n")
        assert first.count("#EXTINF:") == 2
        assert first == (
            "#EXTM3U\n\n"
            '#EXTINF:-1 tvg-id="itv1" tvg-name="ITV One HD" tvg-logo="https://example.com/itv.png" '
            'group-title="UK",ITV 1\n'
            "https://example.com/itv1.m3u8\n\n"
            '#EXTINF:-1 tvg-id="x1" tvg-name="Bare" group-title="Uncategorized",Bare\n'
            "http://example.com/x1\n\n"
        )

    def test_empty_logo_attribute_omitted(self):
        channel = make_channel(
            channel_id="cnn", channel_name="CNN", channel_url="https://example.com/cnn.m3u8",
            tvg_logo="", channel_img="",
        )

        content = serialize([channel])

        assert "tvg-logo" not in content

    def test_logo_falls_back_to_channel_image(self):
        channel = make_channel(
            channel_id="cnn", channel_name="CNN", channel_url="https://example.com/cnn.m3u8",
            channel_img="https://example.com/cnn.png",
        )

        assert 'tvg-logo="https://example.com/cnn.png"' in serialize([channel])

    def test_empty_group_attribute_omitted(self):
        channel = make_channel(
            channel_id="a", channel_name="A", channel_url="https://example.com/a", channel_group="",
        )

        assert "group-title" not in serialize([channel])

    def test_empty_playlist(self):
        assert serialize([]) == "#EXTM3U\n\n"
        assert serialize([], "Mine") == "#EXTM3U\n#PLAYLIST:Mine\n\n"

    def test_does_not_reorder(self):
        first = make_channel(channel_id="z", channel_name="Z", channel_url="https://example.com/z", channel_group="Z")
        second = make_channel(channel_id="a", channel_name="A", channel_url="https://example.com/a", channel_group="A")

        content = serialize([first, second])

        assert content.index('tvg-id="z"') < content.index('tvg-id="a"')


class TestParse:
    """Test suite for M3U import parsing."""

    def test_parse_attributes(self, sample_m3u_content):
        channels = parse(sample_m3u_content)

        assert len(channels) == 3
        abc = channels[0]
        assert abc.channel_id == "ABC.us@East"
        assert abc.channel_name == "ABC East"
        assert abc.tvg_logo == "https://example.com/abc.png"
        assert abc.channel_group == "News, Local"
        assert abc.channel_url == "http://example.com/abc-east.m3u8"
        assert abc.order == 0

    def test_parse_defaults(self, sample_m3u_content):
        channels = parse(sample_m3u_content)

        cnn = channels[1]
        assert cnn.channel_id == "CNN.us"
        assert cnn.channel_name == "CNN (1080p)"
        assert cnn.channel_group == "Uncategorized"

        no_id = channels[2]
        assert no_id.channel_id.startswith("channel_")
        assert no_id.order == 2

    def test_derived_id_is_stable(self, sample_m3u_content):
        assert parse(sample_m3u_content)[2].channel_id == parse(sample_m3u_content)[2].channel_id

    def test_skips_invalid_urls(self):
        content = """#EXTM3U
#EXTINF:-1,Broken
not a url
#EXTINF:-1,Good
https://example.com/good.m3u8
"""
        channels = parse(content)

        assert [channel.channel_name for channel in channels] == ["Good"]

    def test_url_without_extinf_is_ignored(self):
        content = "#EXTM3U\nhttps://example.com/orphan.m3u8\n"

        assert parse(content) == []

    def test_skips_entries_with_unsafe_names(self):
        content = (
            "#EXTM3U\n"
            '#EXTINF:-1 tvg-id="bell",Bell\x07Channel\n'
            "https://example.com/bell.m3u8\n"
            '#EXTINF:-1 tvg-id="quoted",Say "Hi" TV\n'
            "https://example.com/quoted.m3u8\n"
            '#EXTINF:-1 tvg-id="fine",Fine\n'
            "https://example.com/fine.m3u8\n"
        )

        channels = parse(content)

        assert [channel.channel_id for channel in channels] == ["fine"]

    def test_parse_then_serialize(self):
        content = (
            "#EXTM3U\n\n"
            '#EXTINF:-1 tvg-id="bbc1" tvg-name="BBC One" group-title="UK",BBC One\n'
            "https://example.com/bbc1.m3u8\n\n"
        )
        channels = [Channel(**channel.model_dump()) for channel in parse(content)]

        assert serialize(channels) == content
