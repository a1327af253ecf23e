# meshpub

Building blocks for a mesh-based publish/subscribe network:

- **Peer scoring** (`meshpub.score`). `PeerScore` tracks how each peer behaves and turns it into a number. It counts time in the mesh, first and mesh message deliveries, sticky mesh failure penalties, invalid messages, an application-specific score, IP colocation and behavioural penalties.
- **Score parameters** (`meshpub.params`, `meshpub.thresholds`). `TopicScoreParams`, `PeerScoreParams` and `PeerScoreThresholds` hold the settings. Their `validate()` methods raise `ScoreParamsError`. They work in atomic mode, where every field must be sensible, or in selective mode (`skip_atomic_validation=True`), where groups of fields left at zero are skipped.
- **Messages** (`meshpub.message`). `Message` holds the wire fields and the local delivery metadata. It has a protobuf encoding (`Message.marshal`, `unmarshal_message`) and a default ID function (`default_msg_id_fn`). `MessageSignaturePolicy` sets whether messages are signed and whether signatures are checked.
- **Signing** (`meshpub.sign`). `sign_message` and `verify_message_signature` work with Ed25519, RSA and ECDSA keys from `cryptography`. Peer IDs come from `peer_id_from_public_key`.
- **Subscriptions** (`meshpub.subscription`). A `Subscription` is a bounded, thread-safe queue of messages for one topic. It can be cancelled.

## Installation

```
pip install meshpub
```

To run the tests:

```
pip install "meshpub[test]"
pytest
```

## Score parameters

Durations are `datetime.timedelta` values.

```python
from datetime import timedelta

from meshpub.params import PeerScoreParams, TopicScoreParams
from meshpub.thresholds import PeerScoreThresholds, score_parameter_decay

topic = TopicScoreParams(
    topic_weight=1,
    time_in_mesh_weight=0.01,
    time_in_mesh_quantum=timedelta(seconds=1),
    time_in_mesh_cap=10,
    first_message_deliveries_weight=1,
    first_message_deliveries_decay=score_parameter_decay(timedelta(hours=1)),
    first_message_deliveries_cap=10,
    invalid_message_deliveries_weight=-1,
    invalid_message_deliveries_decay=0.5,
    skip_atomic_validation=True,
)
params = PeerScoreParams(
    topics={"blocks": topic},
    app_specific_score=lambda pid: 0.0,
    decay_interval=timedelta(seconds=1),
    decay_to_zero=0.01,
    skip_atomic_validation=True,
)
params.validate()  # raises ScoreParamsError on bad settings

PeerScoreThresholds(
    gossip_threshold=-10,
    publish_threshold=-50,
    graylist_threshold=-80,
).validate()
```

`score_parameter_decay(decay)` gives the factor that brings a counter down to 0.01 after `decay`, with a decay step of one second. `score_parameter_decay_with_base(decay, base, decay_to_zero)` lets you choose the step and the floor.

In selective mode, `PeerScoreParams.validate()` fills in a missing `app_specific_score` with a function that always returns 0.

## Scoring peers

Peer IDs are `bytes`.

```python
from meshpub.message import Message
from meshpub.score import PeerScore, RejectReason

scorer = PeerScore(params)
scorer.add_peer(b"peer-a", "/meshsub/1.1.0")
scorer.graft(b"peer-a", "blocks")

msg = Message(topic="blocks", from_peer=b"peer-a", seqno=b"\x00\x01", received_from=b"peer-a")
scorer.validate_message(msg)
scorer.deliver_message(msg)
scorer.refresh_scores()

print(scorer.score(b"peer-a"))
```

- `duplicate_message(msg)` and `reject_message(msg, reason)` feed the delivery tracker. `reason` is a `RejectReason` or its string value.
- `prune(pid, topic)` and `remove_peer(pid)` apply the mesh failure penalty. Non-positive scores of disconnected peers are kept for `retain_score`.
- `add_penalty(pid, count)` raises the behavioural penalty.
- `set_topic_score_params(topic, params)` swaps in new topic parameters. If the new caps are lower, the existing counters are cut down to them.
- `snapshot()` returns a `PeerScoreSnapshot` for each peer. It holds the score and its parts.

`PeerScore` takes these keyword options:

- `msg_id_fn`: how to identify messages. The default is `default_msg_id_fn`.
- `ip_source`: a callable from a peer ID to its remote IP strings. Without it, no IPs are tracked and P6 stays 0.
- `clock`: returns the current time in seconds.
- `inspect` or `inspect_extended`, with `inspect_period`: callbacks that receive the scores on a schedule.

`start()` runs the periodic work in a background thread: decay every `decay_interval`, an IP refresh and delivery record clean-up every minute, and inspection. `stop()` ends it.

## Signing messages

```python
from cryptography.hazmat.primitives.asymmetric import ed25519

from meshpub.message import Message
from meshpub.sign import peer_id_from_public_key, sign_message, verify_message_signature

key = ed25519.Ed25519PrivateKey.generate()
pid = peer_id_from_public_key(key.public_key())
msg = Message(data=b"abc", topic="foo", from_peer=pid, seqno=b"123")

sign_message(pid, key, msg)
verify_message_signature(msg)  # raises SignatureError if invalid
```

What gets signed is the prefix `libp2p-pubsub:` followed by the encoded message. When the peer ID does not carry the public key inline, as with RSA, `sign_message` attaches the marshalled key to `msg.key`.

## Subscriptions

```python
from meshpub.subscription import Subscription, SubscriptionCancelled

sub = Subscription("blocks", buffer_size=32)
sub.deliver(msg)                  # False if the buffer is full or the subscription closed
received = sub.next(timeout=1.0)  # TimeoutError if nothing arrives
sub.cancel()
```

`cancel()` calls the `on_cancel` handler if one was given. Otherwise it closes the subscription. Messages already in the buffer can still be read after that. Once the buffer is empty, `next` raises `SubscriptionCancelled`.

## What this package does not do

This package provides the pieces a pubsub node is built from, not a node. It has none of the following:

- a network transport or peer connections;
- a message router (flood, random or gossip);
- topic joining or announcing;
- a validation pipeline;
- a command-line program.

Callers feed events to `PeerScore` and messages to `Subscription` themselves.