import threading
import unittest

from pgcdc.core.exceptions import ConnectorException
from pgcdc.pipeline.queue import ChangeEventQueue

class TestChangeEventQueue(unittest.TestCase):
    def setUp(self):
        self.shutdown = threading.Event()
        self.queue = ChangeEventQueue(max_size=3, poll_interval=0.01, shutdown_event=self.shutdown)

    def test_fifo_batches(self):
        for event in range(3):
            self.assertTrue(self.queue.enqueue(event))

        self.assertEqual(self.queue.poll(max_batch=2, timeout=0.1), [0, 1])
        self.assertEqual(self.queue.poll(max_batch=2, timeout=0.1), [2])
        self.assertEqual(self.queue.poll(max_batch=2, timeout=0.05), [])

    def test_invalid_size(self):
        with self.assertRaises(ValueError):
            ChangeEventQueue(max_size=0)

    def test_blocked_producer_is_released_by_consumer(self):
        for event in range(3):
            self.queue.enqueue(event)
        results = []
        producer = threading.Thread(target=lambda: results.append(self.queue.enqueue(3)))
        producer.start()

        self.assertEqual(self.queue.poll(max_batch=3, timeout=0.1), [0, 1, 2])
        producer.join(2)
        self.assertEqual(results, [True])
        self.assertEqual(self.queue.poll(timeout=0.1), [3])

    def test_blocked_producer_fails_on_fatal_error(self):
        for event in range(3):
            self.queue.enqueue(event)
        errors = []

        def produce():
            try:
                self.queue.enqueue(3)
            except ConnectorException as e:
                errors.append(e)

        producer = threading.Thread(target=produce)
        producer.start()
        cause = RuntimeError("slot dropped")
        self.queue.notify_fatal_error(cause)
        producer.join(2)

        self.assertFalse(producer.is_alive())
        self.assertEqual(len(errors), 1)
        self.assertIs(errors[0].__cause__, cause)

    def test_blocked_producer_stops_on_shutdown(self):
        for event in range(3):
            self.queue.enqueue(event)
        timer = threading.Timer(0.05, self.shutdown.set)
        timer.start()
        try:
            self.assertFalse(self.queue.enqueue(3))
        finally:
            timer.cancel()

    def test_consumer_drains_before_failure(self):
        self.queue.enqueue('a')
        self.queue.enqueue('b')
        self.queue.notify_fatal_error(ValueError("boom"))

        self.assertEqual(self.queue.poll(timeout=0.1), ['a', 'b'])
        with self.assertRaises(ConnectorException) as context:
            self.queue.poll(timeout=0.1)
        self.assertEqual(context.exception.error_code, 'PRODUCER_FAILED')

    def test_first_fatal_error_wins(self):
        first = ValueError("first")
        self.queue.notify_fatal_error(first)
        self.queue.notify_fatal_error(ValueError("second"))
        self.assertIs(self.queue.producer_error, first)

    def test_poll_returns_on_shutdown(self):
        self.shutdown.set()
        self.assertEqual(self.queue.poll(timeout=5.0), [])

if __name__ == '__main__':
    unittest.main()
