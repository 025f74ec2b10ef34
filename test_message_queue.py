"""Tests for the per-project message queue."""

from message_queue import Attachment, MessageQueue, QueuedMessage


def test_fifo_order():
    queue = MessageQueue()
    queue.enqueue("m1")
    queue.enqueue("m2")
    assert queue.size == 2
    assert queue.peek().content == "m1"
    assert [m.content for m in queue.dequeue_all()] == ["m1", "m2"]
    assert queue.dequeue_all() == []
    assert queue.dequeue() is None


def test_dequeue_takes_only_the_head():
    queue = MessageQueue()
    queue.enqueue("first")
    queue.enqueue("second")
    assert queue.dequeue().content == "first"
    assert len(queue) == 1


def test_empty_messages_are_dropped():
    queue = MessageQueue()
    assert queue.enqueue("   \n") is None
    assert not queue
    kept = queue.enqueue("", [Attachment("a.png", b"\x89PNG", "image/png")])
    assert kept is not None
    assert queue.size == 1


def test_change_callback_sees_snapshot():
    seen = []
    queue = MessageQueue(on_change=lambda items: seen.append([m.content for m in items]))
    queue.enqueue("a")
    queue.enqueue("b")
    queue.dequeue()
    queue.clear()
    queue.clear()
    assert seen == [["a"], ["a", "b"], ["b"], []]


def test_failing_callback_does_not_break_the_queue():
    def boom(items):
        raise RuntimeError("listener down")

    queue = MessageQueue(on_change=boom)
    queue.enqueue("still queued")
    assert queue.size == 1


def test_serialization_keeps_attachment_bytes():
    msg = QueuedMessage("see file", [Attachment("data.bin", b"\x00\x01\xff")])
    restored = QueuedMessage.from_dict(msg.to_dict())
    assert restored == msg
    assert MessageQueue([restored, QueuedMessage(" ")]).size == 1
