import hellodocker

if __name__ == '__main__':
    hellodocker.run(host='0.0.0.0', port=8080, loglevel=hellodocker.LL_INFO)
