"""Setup utilities for simulation configurations."""

import pint


def read_param_values(params_dict, parent_key="", sep="_"):
    """
    Flatten nested parameter dictionary by concatenating keys.

    Returns a dictionary where each parameter is a dictionary with a
    'value' and any other attributes such as 'units'.

    Parameters
    ----------
    params_dict : dict
        Nested dictionary of parameters to flatten. Leaf nodes should have
        'value' and optionally 'units' keys (as strings).
    parent_key : str, optional
        Prefix for keys (used in recursion), by default ''
    sep : str, optional
        Separator between nested keys, by default '_'

    Returns
    -------
    dict
        Flat dictionary with concatenated keys. Each value is a dict with
        'value' and any additional fields (e.g., 'units', 'name', 'desc')
        from the original parameter dict.

    Examples
    --------
    >>> params = {
    ...     'ball': {
    ...         'height': {'value': 120.0, 'units': 'cm'},
    ...         'restitution': {
    ...             'value': 0.8,
    ...             'name': 'Coefficient of restitution',
    ...         }
    ...     },
    ...     'gravity': {'value': 9.81, 'units': 'm/s**2'},
    ... }
    >>> result = read_param_values(params)
    >>> result['ball_height']
    {'value': 120.0, 'units': 'cm'}
    >>> result['ball_restitution']
    {'value': 0.8, 'name': 'Coefficient of restitution'}

    Notes
    -----
    - Any additional fields (e.g., 'name', 'desc') are preserved in output
    - For non-dict values, stores as dict with value and units=None
    - Handles arbitrary nesting depth

    See Also
    --------
    read_param_values_pint : Converts units to pint unit objects
    """
    items = []

    for key, value in params_dict.items():
        new_key = f"{parent_key}{sep}{key}" if parent_key else key

        if isinstance(value, dict):
            if "value" in value:
                param_dict = {"value": value["value"]}
                for field_key, field_value in value.items():
                    if field_key != "value":
                        param_dict[field_key] = field_value
                items.append((new_key, param_dict))
            else:
                items.extend(
                    read_param_values(
                        value, parent_key=new_key, sep=sep
                    ).items()
                )
        else:
            items.append((new_key, {"value": value, "units": None}))

    return dict(items)


def read_param_values_pint(params_dict, ureg=None, parent_key="", sep="_"):
    """
    Flatten nested parameter dictionary and convert units to pint objects.

    Parameters
    ----------
    params_dict : dict
        Nested dictionary of parameters to flatten. Leaf nodes should have
        'value' and optionally 'units' keys (as strings).
    ureg : pint.UnitRegistry, optional
        Unit registry to use for creating unit objects. If None, a new
        registry is created.
    parent_key : str, optional
        Prefix for keys (used in recursion), by default ''
    sep : str, optional
        Separator between nested keys, by default '_'

    Returns
    -------
    dict
        Flat dictionary with concatenated keys. Each value is a dict with
        'value' and 'units' keys, plus any additional fields from the
        original parameter dict. 'units' is a pint Unit object if units
        were specified in the input, otherwise None.

    Examples
    --------
    >>> ureg = pint.UnitRegistry()
    >>> params = {'ball': {'height': {'value': 120.0, 'units': 'cm'}}}
    >>> read_param_values_pint(params, ureg)['ball_height']
    {'value': 120.0, 'units': <Unit('centimeter')>}

    See Also
    --------
    read_param_values : Flatten without converting units to pint objects
    param_magnitudes : Convert to plain SI magnitudes
    """
    if ureg is None:
        ureg = pint.UnitRegistry()
    params_flat = read_param_values(
        params_dict, parent_key=parent_key, sep=sep
    )

    for value in params_flat.values():
        units = value.get("units")
        value["units"] = ureg(units).units if units else None

    return params_flat


def param_magnitudes(params_dict, ureg=None, sep="_"):
    """
    Flatten nested parameters and convert them to SI base-unit magnitudes.

    Model builders take plain floats in SI units, so this is the form the
    simulation runner passes on. Parameters without units are returned
    unchanged.

    Parameters
    ----------
    params_dict : dict
        Nested dictionary of parameters (see read_param_values)
    ureg : pint.UnitRegistry, optional
        Unit registry. If None, a new registry is created.
    sep : str, optional
        Separator between nested keys, by default '_'

    Returns
    -------
    dict
        Flat dictionary of parameter name to magnitude

    Examples
    --------
    >>> params = {'ball': {'height': {'value': 120.0, 'units': 'cm'}}}
    >>> param_magnitudes(params)
    {'ball_height': 1.2}
    """
    if ureg is None:
        ureg = pint.UnitRegistry()
    result = {}
    for key, param in read_param_values_pint(
        params_dict, ureg=ureg, sep=sep
    ).items():
        units = param.get("units")
        if units is None:
            result[key] = param["value"]
        else:
            quantity = ureg.Quantity(param["value"], units)
            result[key] = quantity.to_base_units().magnitude
    return result
