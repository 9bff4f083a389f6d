from raffle.events import TICKET_SOLD, EventExchange, TicketSold


def test_subscribe():
    """
    You can subscribe to named events.
    """
    exchange = EventExchange()
    called = []
    exchange.subscribe(TICKET_SOLD, called.append)

    exchange.emit(TICKET_SOLD, TicketSold(1, 'Ana', ''))

    assert called == [TicketSold(1, 'Ana', '')]


def test_subscribe_many():
    """
    Everyone on the list gets the event, even if one of them raises.
    """
    exchange = EventExchange()
    called_a = []

    def a(event):
        called_a.append(event)
        raise Exception('boom')

    called_b = []
    exchange.subscribe('foo', a)
    exchange.subscribe('foo', called_b.append)

    delivered = exchange.emit('foo', 'something')

    assert called_a == ['something']
    assert called_b == ['something']
    assert delivered == 1


def test_disable_and_enable():
    exchange = EventExchange()
    called = []
    exchange.subscribe('foo', called.append)

    exchange.disable('foo')
    exchange.emit('foo', 'dropped')
    exchange.enable('foo')
    exchange.emit('foo', 'kept')

    assert called == ['kept']


def test_unsubscribe():
    exchange = EventExchange()
    called = []
    exchange.subscribe('foo', called.append)
    exchange.unsubscribe('foo', called.append)

    assert exchange.emit('foo', 'something') == 0
    assert called == []
