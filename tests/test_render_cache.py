from conftest import ImmediateExecutor, ManualExecutor
from battlemap.codec import MaskCodec
from battlemap.mask import MaskStore
from battlemap.render_cache import RenderCache


def encoded(policy, size=(30, 20)):
    return MaskCodec().encode(MaskStore(size[0], size[1], policy).image).data_uri


def test_successful_decode_swaps_and_redraws():
    swaps = []
    cache = RenderCache(executor=ImmediateExecutor(), on_swap=lambda key, image: swaps.append(key))
    assert cache.receive(encoded('hidden'), key='m1').result() is True
    assert cache.displayed.size == (30, 20)
    assert cache.image_for('m1') is cache.displayed
    assert cache.image_for('m2') is None
    assert swaps == ['m1']


def test_failed_decode_keeps_previous_image():
    swaps = []
    cache = RenderCache(executor=ImmediateExecutor(), on_swap=lambda key, image: swaps.append(key))
    cache.receive(encoded('hidden'), key='m1')
    previous = cache.displayed
    assert cache.receive('data:image/png;base64,AAAA', key='m1').result() is False
    assert cache.displayed is previous
    assert swaps == ['m1']


def test_late_decode_of_older_mask_is_discarded():
    executor = ManualExecutor()
    cache = RenderCache(executor=executor)
    cache.receive(encoded('revealed'), key='m1')
    cache.receive(encoded('hidden'), key='m1')
    assert executor.run(1) is True
    assert executor.run(0) is False
    assert cache.displayed.getpixel((5, 5))[3] == 255


def test_displayed_image_stays_until_new_decode_lands():
    executor = ManualExecutor()
    cache = RenderCache(executor=executor)
    cache.receive(encoded('hidden'), key='m1'); executor.run(0)
    previous = cache.displayed
    cache.receive(encoded('revealed'), key='m1')
    assert cache.displayed is previous
    assert cache.pending_key == 'm1'
    executor.run(1)
    assert cache.displayed is not previous
    assert cache.pending_key is None


def test_real_executor_future_completes_after_swap():
    cache = RenderCache()
    assert cache.receive(encoded('hidden'), key='m1').result(timeout=10) is True
    assert cache.image_for('m1') is not None


def test_clear_drops_image_and_in_flight_decode():
    executor = ManualExecutor()
    cache = RenderCache(executor=executor)
    cache.receive(encoded('hidden'), key='m1'); executor.run(0)
    cache.receive(encoded('hidden'), key='m1')
    cache.clear()
    assert cache.displayed is None
    assert executor.run(1) is False
    assert cache.displayed is None
