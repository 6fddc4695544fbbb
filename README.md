# storytape

`storytape` holds the logic behind a small tape-recorder-style device for
recording spoken stories, one chapter at a time, and keeping them in the
cloud. It is written as a plain Python library. Every piece of hardware or
network access is passed in from outside (a clock, a Wi-Fi check, an
audio sink, an HTTP session), so you can drive it from real devices, from a
simulator or from tests.

## What is in it

| Module | Purpose |
| --- | --- |
| `storytape.prefs` | `Preferences`: a small persistent key/value store split into namespaces. |
| `storytape.book` | `Book`: the book name and its chapter list, with an active chapter. Raises `BookFullError` when no more chapters fit. |
| `storytape.pairing` | `Pairing`: device id, pairing token, QR deep link and stored Wi-Fi credentials. `BleStatus` holds the status codes sent to the phone app. |
| `storytape.api` | `CloudClient`: authenticated JSON/binary POSTs to the backend. Raises `CloudError`. |
| `storytape.cloud_sync` | `CloudSync`: polls the backend until onboarding is complete, then marks pairing done. |
| `storytape.recorder` | `Recorder`: turns a PCM stream into fixed-size chunks with a double-buffered hand-off, level metering and session ids. |
| `storytape.uploader` | `Uploader`: posts chunks, retries, gives up after repeated network failures and finalizes the recording. |
| `storytape.status` | Formatting for on-screen timers, chapter labels, upload status text, and a smoothed `VuMeter`. |
| `storytape.playback` | `Player`: fetches a chapter's clip list and streams the clips one after another to an audio sink, with `Volume` kept in preferences. |
| `storytape.ble_pairing` | `PairingService`: the logic behind the pairing characteristics: credential payloads, status notifications and the Wi-Fi network list. |
| `storytape.navigation` | `Navigator`: which screen is showing, the chapter picker and the chapter banner. |

## A book with chapters

```python
from storytape.prefs import Preferences
from storytape.book import Book, BookFullError

prefs = Preferences("device-state.json")
book = Book(prefs)
book.load()                     # a new book always starts with "Chapter 1"

book.set_name("Grandpa's Stories")
index = book.add_chapter()      # "Chapter 2"
book.set_active_chapter(index)

try:
    while True:
        book.add_chapter()
except BookFullError:
    pass                        # the chapter limit has been reached
```

Until a name is set, `book.name()` returns `"My Stories"`, and
`book.has_name()` stays false.

## Pairing

```python
from storytape.pairing import Pairing, device_id_from_mac

pairing = Pairing(prefs, mac=0x000000000000, token_factory=lambda: bytes(16))
pairing.begin()
print(pairing.device_id())      # "LT-" followed by six hex digits
print(pairing.qr_url())         # legacytape://pair?d=<device id>&t=<token>
```

The token is made once and then kept in the preferences. `factory_reset()`
erases it, together with the paired flag.

## Recording and uploading

The recorder does not read a microphone itself. You pass it PCM bytes
(16 kHz, mono, 16-bit little-endian):

```python
from storytape.recorder import Recorder

recorder = Recorder(chunk_bytes=320_000, warmup_bytes=16_000)
recorder.start()
recorder.feed(pcm_bytes)        # call this as audio arrives
recorder.stop()                 # the last partial chunk goes out as well
recorder.finish_capture()
```

An `Uploader` takes the finished chunks with `take_chunk()` and posts them
through a `CloudClient`. Call `request_finalize()` once recording has
stopped. The recording then moves from finalizing to complete once the
server has confirmed it.

```python
from storytape.api import CloudClient

client = CloudClient("https://backend.example.com", api_key="placeholder", session=None)
```

## Playback

`Player.play(chapter)` fetches the chapter's clips, skips each clip's WAV
header and writes the audio to the sink you supply. The right channel
carries the audio, scaled by the current `Volume`, and the left channel is
silent. `stop()` can be called at any time.

## Running the tests

Install the package with its `test` extra. The tests use pytest and
`responses` instead of a live backend.