import pytest

from tunedesk.bots.callback_data import CallbackPayload, build_callback_data, parse_callback_data


FILE_ID = '3f2b6c1e-9a4d-4c1b-8f0e-2d5a7b9c1e42'


@pytest.mark.parametrize(
    ('data', 'expected'),
    [
        (f'file_admin_status_{FILE_ID}_READY', CallbackPayload('file_admin', 'status', FILE_ID, 'READY')),
        (f'super_admin_status_{FILE_ID}_PENDING', CallbackPayload('super_admin', 'status', FILE_ID, 'PENDING')),
        (f'file_admin_estimated_time_{FILE_ID}', CallbackPayload('file_admin', 'estimated_time', FILE_ID)),
        (f'super_admin_time_{FILE_ID}_1440', CallbackPayload('super_admin', 'time', FILE_ID, '1440')),
        (f'file_admin_cancel_{FILE_ID}', CallbackPayload('file_admin', 'cancel', FILE_ID)),
        (f'legacy_status_{FILE_ID}_READY', CallbackPayload('legacy', 'status', FILE_ID, 'READY')),
    ],
)
def test_parse_locates_file_id_positionally(data, expected):
    assert parse_callback_data(data) == expected


@pytest.mark.parametrize(
    'data',
    [
        None,
        '',
        'file_admin_status_not-a-uuid_READY',
        f'{FILE_ID}_READY',
        f'status_{FILE_ID}',
    ],
)
def test_parse_rejects_malformed(data):
    assert parse_callback_data(data) is None


def test_status_argument_is_normalised():
    payload = parse_callback_data(f'file_admin_status_{FILE_ID}_ready')

    assert payload.status == 'READY'
    assert parse_callback_data(f'file_admin_cancel_{FILE_ID}').status is None


def test_build_round_trips_through_parse():
    data = build_callback_data('super_admin', 'estimated_time', FILE_ID)

    assert data == f'super_admin_estimated_time_{FILE_ID}'
    assert parse_callback_data(data).encode() == data


def test_build_enforces_telegram_size_limit():
    with pytest.raises(ValueError):
        build_callback_data('super_admin', 'estimated_time', FILE_ID, 'X' * 10)


def test_build_requires_uuid_file_id():
    with pytest.raises(ValueError):
        build_callback_data('file_admin', 'status', 'file_42', 'READY')
